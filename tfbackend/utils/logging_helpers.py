"""Request-scoped logging context for the state backend."""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional, Tuple, Union


LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

#: Present on every record emitted through :class:`ContextLoggerAdapter`,
#: as ``None`` when the caller has not bound a value.
REQUIRED_LOG_KEYS: Tuple[str, ...] = (
    "state_id",
    "method",
    "path",
    "event_type",
    "request_category",
)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Adapter whose bound context is merged under each call's ``extra``.

    Per-call ``extra`` values win over bound ones, so a request logger bound
    to a ``state_id`` can still tag a single record with a ``status``.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Mapping[str, Any]] = None):
        context = dict.fromkeys(REQUIRED_LOG_KEYS)
        context.update(extra or {})
        super().__init__(logger, context)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def getChild(self, suffix: str) -> "ContextLoggerAdapter":  # noqa: N802 - mirror logging API
        return ContextLoggerAdapter(self.logger.getChild(suffix), self.extra)

    def bind(self, **context: Any) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, {**self.extra, **context})


def add_context(logger: LoggerLike, **context: Any) -> ContextLoggerAdapter:
    """Return ``logger`` bound to ``context``, wrapping plain loggers first."""

    if isinstance(logger, ContextLoggerAdapter):
        return logger.bind(**context)
    if isinstance(logger, logging.LoggerAdapter):
        return ContextLoggerAdapter(logger.logger, {**(logger.extra or {}), **context})
    return ContextLoggerAdapter(logger, context)


__all__ = [
    "ContextLoggerAdapter",
    "LoggerLike",
    "REQUIRED_LOG_KEYS",
    "add_context",
]
