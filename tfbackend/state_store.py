"""Async SQLAlchemy persistence for state records and their locks."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from sqlalchemy import LargeBinary, Table, cast, func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from tfbackend.database_schema import DEFAULT_STATE_SCHEMA, StateSchema
from tfbackend.errors import StorageError
from tfbackend.metrics import STORAGE_ERRORS, STORAGE_OPERATION_DURATION
from tfbackend.utils.logging_helpers import LoggerLike


_INSERT_FACTORIES: Dict[str, Callable[[Table], Any]] = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


def _as_bytes(value: Union[bytes, bytearray, memoryview, str, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


@dataclass(frozen=True, slots=True)
class StateRecord:
    """A persisted state blob and the lock envelope guarding it.

    Empty ``data`` means nothing was written (or it was deleted); empty
    ``lock`` means the record is unlocked. A record that was never stored is
    represented by the zero value rather than by an error.
    """

    id: str = ""
    data: bytes = b""
    lock: bytes = b""

    @property
    def locked(self) -> bool:
        return bool(self.lock)


class StateStore:
    """Schema-aware state persistence on top of an async SQLAlchemy engine.

    Every write is a single SQL statement keyed by the primary key, so the
    store never exposes a window between an existence check and a write.
    :meth:`compare_and_set` additionally makes a write conditional on the
    stored lock, which is what the lock protocol uses to guarantee a single
    writer per fingerprint.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        schema: StateSchema = DEFAULT_STATE_SCHEMA,
        *,
        logger: Optional[LoggerLike] = None,
    ) -> None:
        dialect = engine.dialect.name
        insert_factory = _INSERT_FACTORIES.get(dialect)
        if insert_factory is None:
            raise StorageError(
                f"unsupported database dialect: {dialect}", operation="open"
            )
        self._engine = engine
        self._schema = schema
        self._table = schema.build_table()
        self._insert_factory = insert_factory
        self._logger = logger if logger is not None else logging.getLogger(__name__)

    @classmethod
    def from_url(
        cls,
        database_url: str,
        schema: StateSchema = DEFAULT_STATE_SCHEMA,
        *,
        echo: bool = False,
        logger: Optional[LoggerLike] = None,
    ) -> "StateStore":
        engine_kwargs: Dict[str, object] = {"echo": echo}
        if database_url.startswith("sqlite+aiosqlite:///:memory"):
            engine_kwargs["poolclass"] = StaticPool
        try:
            engine = create_async_engine(database_url, **engine_kwargs)
        except (SQLAlchemyError, ImportError) as exc:
            raise StorageError(str(exc), operation="open") from exc
        return cls(engine, schema, logger=logger)

    @property
    def schema(self) -> StateSchema:
        return self._schema

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Column helpers
    # ------------------------------------------------------------------

    @property
    def _id_col(self):
        return self._table.c[self._schema.id_column]

    @property
    def _data_col(self):
        return self._table.c[self._schema.data_column]

    @property
    def _lock_col(self):
        return self._table.c[self._schema.lock_column]

    @staticmethod
    def _blob(column):
        # SQLite keeps the storage class chosen by the writer, so rows stored
        # as TEXT are read and compared as BLOB.
        return cast(column, LargeBinary)

    @contextlib.contextmanager
    def _storage_operation(self, operation: str) -> Iterator[None]:
        with STORAGE_OPERATION_DURATION.labels(operation=operation).time():
            try:
                yield
            except SQLAlchemyError as exc:
                STORAGE_ERRORS.labels(operation=operation).inc()
                message = str(getattr(exc, "orig", None) or exc)
                self._logger.error(
                    "Storage operation %s failed: %s",
                    operation,
                    message,
                    extra={"operation": operation, "error_type": type(exc).__name__},
                )
                raise StorageError(message, operation=operation) from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_schema(self) -> None:
        """Create the state table when it does not exist yet."""

        with self._storage_operation("create_schema"):
            async with self._engine.begin() as conn:
                await conn.run_sync(self._table.metadata.create_all)
        self._logger.info(
            "State schema ready",
            extra={"table": self._schema.table_name},
        )

    async def close(self) -> None:
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lookup(self, state_id: str) -> StateRecord:
        """Return the record for ``state_id`` or an empty record if absent."""

        stmt = select(self._blob(self._data_col), self._blob(self._lock_col)).where(
            self._id_col == state_id
        )
        with self._storage_operation("lookup"):
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        if row is None:
            return StateRecord(id=state_id)
        return StateRecord(id=state_id, data=_as_bytes(row[0]), lock=_as_bytes(row[1]))

    async def scan(self) -> List[StateRecord]:
        """Return every stored record ordered by id."""

        stmt = select(
            self._id_col, self._blob(self._data_col), self._blob(self._lock_col)
        ).order_by(self._id_col)
        with self._storage_operation("scan"):
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        return [
            StateRecord(id=row[0], data=_as_bytes(row[1]), lock=_as_bytes(row[2]))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, state_id: str, record: StateRecord) -> None:
        """Insert ``record`` or replace both columns of the existing row."""

        insert_stmt = self._insert_factory(self._table).values(
            {
                self._schema.id_column: state_id,
                self._schema.data_column: record.data,
                self._schema.lock_column: record.lock,
            }
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[self._id_col],
            set_={
                self._schema.data_column: insert_stmt.excluded[self._schema.data_column],
                self._schema.lock_column: insert_stmt.excluded[self._schema.lock_column],
            },
        )
        with self._storage_operation("upsert"):
            async with self._engine.begin() as conn:
                await conn.execute(stmt)

    async def compare_and_set(
        self,
        state_id: str,
        *,
        expected_lock: Optional[bytes],
        data: Optional[bytes] = None,
        lock: Optional[bytes] = None,
    ) -> bool:
        """Atomically write ``data`` and/or ``lock`` if the stored lock matches.

        ``expected_lock`` is compared against the stored lock with NULL read
        as empty. An empty expectation also matches a missing row, which is
        then inserted with empty defaults for the columns not being written.
        ``None`` disables the comparison. Returns ``True`` when a row was
        written.
        """

        changes: Dict[str, bytes] = {}
        if data is not None:
            changes[self._schema.data_column] = data
        if lock is not None:
            changes[self._schema.lock_column] = lock
        if not changes:
            raise ValueError("compare_and_set requires data or lock")

        if expected_lock:
            stmt = (
                update(self._table)
                .where(
                    self._id_col == state_id,
                    self._blob(self._lock_col) == expected_lock,
                )
                .values(changes)
            )
        else:
            values: Dict[str, Any] = {
                self._schema.id_column: state_id,
                self._schema.data_column: b"",
                self._schema.lock_column: b"",
            }
            values.update(changes)
            insert_stmt = self._insert_factory(self._table).values(values)
            condition = None
            if expected_lock is not None:
                condition = func.length(func.coalesce(self._lock_col, b"")) == 0
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[self._id_col],
                set_={column: insert_stmt.excluded[column] for column in changes},
                where=condition,
            )

        with self._storage_operation("compare_and_set"):
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
                written = result.rowcount > 0
        return written


__all__ = ["StateRecord", "StateStore"]
