import json
import logging
from typing import Any, Dict, Mapping

from tfbackend.utils.time_utils import now_utc


#: Attributes every :class:`logging.LogRecord` carries; anything else on a
#: record came from ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

#: Context keys promoted to the top level of the JSON document.
_TOP_LEVEL_KEYS = (
    "state_id",
    "method",
    "path",
    "status",
    "operation",
    "error_type",
    "event_type",
    "stage",
    "category",
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return repr(value)


class ContextJsonFormatter(logging.Formatter):
    """Render each record as one JSON object.

    Request context (:data:`_TOP_LEVEL_KEYS`) sits next to the message; any
    other ``extra`` value is nested under ``"extra"``. Byte strings such as
    lock envelopes are decoded as UTF-8 with replacement.
    """

    def format(self, record: logging.LogRecord) -> str:
        custom = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        document: Dict[str, Any] = {
            "timestamp": now_utc().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _TOP_LEVEL_KEYS:
            if key in custom:
                document[key] = _jsonable(custom.pop(key))
        if custom:
            document["extra"] = {key: _jsonable(value) for key, value in custom.items()}
        if record.exc_info:
            document["exception"] = self.formatException(record.exc_info)
        return json.dumps(document, ensure_ascii=False)


def setup_logging(level: int = logging.INFO, debug_mode: bool = False) -> None:
    """Install :class:`ContextJsonFormatter` on the root logger."""

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ContextJsonFormatter())
        root_logger.addHandler(handler)

    root_logger.setLevel(logging.DEBUG if debug_mode else level)

    # The server writes its own line per response.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
