"""SQLAlchemy table definition for persisted state records."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import Column, LargeBinary, MetaData, Table, Text

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class StateSchema:
    """Table and column names used to persist state records."""

    table_name: str = "state"
    id_column: str = "id"
    data_column: str = "data"
    lock_column: str = "lock"

    def __post_init__(self) -> None:
        names = (self.table_name, self.id_column, self.data_column, self.lock_column)
        for name in names:
            if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
                raise ValueError(f"invalid SQL identifier: {name!r}")
        columns = names[1:]
        if len(set(columns)) != len(columns):
            raise ValueError("state schema column names must be distinct")

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "StateSchema":
        """Build a schema from a mapping, keeping defaults for missing keys."""

        if not raw:
            return cls()
        known = {"table_name", "id_column", "data_column", "lock_column"}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"unknown state schema keys: {', '.join(sorted(unknown))}")
        return cls(**{key: raw[key] for key in known if key in raw})

    def build_table(self, metadata: Optional[MetaData] = None) -> Table:
        return Table(
            self.table_name,
            metadata if metadata is not None else MetaData(),
            Column(self.id_column, Text, primary_key=True),
            Column(self.data_column, LargeBinary, nullable=True),
            Column(self.lock_column, LargeBinary, nullable=True),
        )


DEFAULT_STATE_SCHEMA = StateSchema()


__all__ = ["DEFAULT_STATE_SCHEMA", "StateSchema"]
