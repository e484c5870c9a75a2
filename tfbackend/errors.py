"""Exception taxonomy shared by the state backend."""

from __future__ import annotations


class StateBackendError(Exception):
    """Base class for all errors raised by the state backend."""


class ConfigError(StateBackendError):
    """Raised when process configuration is missing or invalid."""


class StorageError(StateBackendError):
    """Raised when the persistence layer fails to open, query or execute."""

    def __init__(self, message: str, *, operation: str = "unknown") -> None:
        super().__init__(message)
        self.operation = operation


class LockParseError(StateBackendError):
    """Raised when a stored lock envelope cannot yield a holder id."""


class ParseError(LockParseError):
    """The lock envelope is not a valid JSON object."""


class MissingFieldError(LockParseError):
    """The lock envelope is valid JSON but lacks a required field."""

    def __init__(self, field: str, raw: bytes) -> None:
        super().__init__(f'error parsing "{field}" from {raw!r}')
        self.field = field


class ConflictError(StateBackendError):
    """Raised when a caller does not hold the lock protecting a record."""

    def __init__(self, current_lock: bytes) -> None:
        super().__init__("state is locked by another holder")
        self.current_lock = current_lock


class UnsupportedMethodError(StateBackendError):
    """Raised for HTTP verbs outside the state protocol."""

    def __init__(self, method: str) -> None:
        super().__init__(f"method {method} is not implemented")
        self.method = method


__all__ = [
    "ConfigError",
    "ConflictError",
    "LockParseError",
    "MissingFieldError",
    "ParseError",
    "StateBackendError",
    "StorageError",
    "UnsupportedMethodError",
]
