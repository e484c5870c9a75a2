"""Lock protocol state machine applied to every state request."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Awaitable, Callable, Dict, Optional

from tfbackend.errors import ConflictError, LockParseError, UnsupportedMethodError
from tfbackend.lock_payload import parse_lock_id
from tfbackend.metrics import LOCK_CONFLICTS_TOTAL
from tfbackend.state_store import StateRecord, StateStore
from tfbackend.utils.logging_helpers import ContextLoggerAdapter, LoggerLike, add_context

METHOD_LOCK = "LOCK"
METHOD_UNLOCK = "UNLOCK"
METHOD_GET = "GET"
METHOD_POST = "POST"
METHOD_DELETE = "DELETE"

SUPPORTED_METHODS = frozenset(
    {METHOD_LOCK, METHOD_UNLOCK, METHOD_GET, METHOD_POST, METHOD_DELETE}
)

NOT_IMPLEMENTED_BODY = b"Not implemented"


@dataclass(frozen=True, slots=True)
class DispatchResult:
    status: int
    body: bytes = b""


@dataclass(frozen=True, slots=True)
class _Call:
    current: StateRecord
    body: bytes
    lock_id: str
    log: ContextLoggerAdapter


_Handler = Callable[[_Call], Awaitable[DispatchResult]]


class LockDispatcher:
    """Decide, per verb, whether a request reads, mutates or is rejected.

    The current record is read once per request. Mutations are issued as
    conditional writes against the lock that was observed, so a lock taken
    or released by a concurrent request between the read and the write is
    reported as a conflict instead of being silently overwritten.

    Storage and lock-parse failures propagate to the caller; lock conflicts
    and unsupported verbs are turned into :class:`DispatchResult` values.
    """

    def __init__(self, store: StateStore, *, logger: Optional[LoggerLike] = None) -> None:
        self._store = store
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._handlers: Dict[str, _Handler] = {
            METHOD_LOCK: self._lock,
            METHOD_UNLOCK: self._unlock,
            METHOD_GET: self._get,
            METHOD_POST: self._write,
            METHOD_DELETE: self._delete,
        }

    async def dispatch(
        self,
        method: str,
        state_id: str,
        body: bytes = b"",
        lock_id: str = "",
    ) -> DispatchResult:
        try:
            handler = self._resolve(method)
        except UnsupportedMethodError:
            return DispatchResult(HTTPStatus.NOT_IMPLEMENTED, NOT_IMPLEMENTED_BODY)

        log = add_context(self._logger, state_id=state_id, method=method)
        current = await self._store.lookup(state_id)
        try:
            return await handler(_Call(current, body, lock_id, log))
        except ConflictError as exc:
            LOCK_CONFLICTS_TOTAL.labels(method=method).inc()
            log.info("Rejected %s on locked state", method)
            return DispatchResult(HTTPStatus.LOCKED, exc.current_lock)

    def _resolve(self, method: str) -> _Handler:
        handler = self._handlers.get(method)
        if handler is None:
            raise UnsupportedMethodError(method)
        return handler

    # ------------------------------------------------------------------
    # Verb policies
    # ------------------------------------------------------------------

    async def _lock(self, call: _Call) -> DispatchResult:
        if call.current.locked:
            raise ConflictError(call.current.lock)
        acquired = await self._store.compare_and_set(
            call.current.id, expected_lock=b"", lock=call.body
        )
        if not acquired:
            raise await self._lost_race(call)
        return DispatchResult(HTTPStatus.OK)

    async def _unlock(self, call: _Call) -> DispatchResult:
        # The holder id is not verified: any caller may release the lock.
        if not call.current.locked:
            return DispatchResult(HTTPStatus.OK)
        if call.lock_id:
            self._log_foreign_unlock(call)
        await self._store.compare_and_set(call.current.id, expected_lock=None, lock=b"")
        return DispatchResult(HTTPStatus.OK)

    async def _get(self, call: _Call) -> DispatchResult:
        return DispatchResult(HTTPStatus.OK, call.current.data)

    async def _write(self, call: _Call) -> DispatchResult:
        return await self._replace_data(call, call.body)

    async def _delete(self, call: _Call) -> DispatchResult:
        return await self._replace_data(call, b"")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _replace_data(self, call: _Call, data: bytes) -> DispatchResult:
        current = call.current
        if current.locked and parse_lock_id(current.lock) != call.lock_id:
            raise ConflictError(current.lock)
        written = await self._store.compare_and_set(
            current.id, expected_lock=current.lock, data=data
        )
        if not written:
            raise await self._lost_race(call)
        return DispatchResult(HTTPStatus.OK)

    async def _lost_race(self, call: _Call) -> ConflictError:
        latest = await self._store.lookup(call.current.id)
        call.log.warning(
            "Lock changed between read and conditional write",
            extra={"error_type": "LockRace"},
        )
        return ConflictError(latest.lock)

    @staticmethod
    def _log_foreign_unlock(call: _Call) -> None:
        try:
            holder = parse_lock_id(call.current.lock)
        except LockParseError:
            holder = None
        if holder != call.lock_id:
            call.log.warning(
                "Releasing lock held by a different holder",
                extra={"holder": holder, "requested_by": call.lock_id},
            )


__all__ = [
    "DispatchResult",
    "LockDispatcher",
    "NOT_IMPLEMENTED_BODY",
    "SUPPORTED_METHODS",
]
