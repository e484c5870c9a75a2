import ipaddress
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from tfbackend.database_schema import StateSchema
from tfbackend.errors import ConfigError


logger = logging.getLogger(__name__)


_BASE_DIR = Path(__file__).resolve().parent.parent

_DEFAULT_SYSTEM_CONSTANTS_DATA: Dict[str, Any] = {
    "default_database_file": "state.db",
    "default_listen_ip": "127.0.0.1",
    "default_listen_port": 8080,
    "state_route_prefix": "/s/",
    "dump_route_prefix": "/health/dump/",
}

_DEFAULT_STATE_SCHEMA_DATA: Dict[str, Any] = {
    "table_name": "state",
    "id_column": "id",
    "data_column": "data",
    "lock_column": "lock",
}

DEFAULT_DATABASE_FILE: str = _DEFAULT_SYSTEM_CONSTANTS_DATA["default_database_file"]
DEFAULT_LISTEN_IP: str = _DEFAULT_SYSTEM_CONSTANTS_DATA["default_listen_ip"]
DEFAULT_LISTEN_PORT: int = _DEFAULT_SYSTEM_CONSTANTS_DATA["default_listen_port"]
STATE_ROUTE_PREFIX: str = _DEFAULT_SYSTEM_CONSTANTS_DATA["state_route_prefix"]
DUMP_ROUTE_PREFIX: str = _DEFAULT_SYSTEM_CONSTANTS_DATA["dump_route_prefix"]

_TRUTHY_VALUES = {"1", "true", "yes", "on"}
_SQLITE_MEMORY = ":memory:"


def _resolve_config_path(candidate: str) -> Path:
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = _BASE_DIR / path
    return path


def load_state_schema(path: Optional[str] = None) -> StateSchema:
    """Return the state schema, applying overrides from a YAML file if given.

    The file holds a mapping with any of ``table_name``, ``id_column``,
    ``data_column`` and ``lock_column``; missing keys keep their defaults.
    """

    data: Dict[str, Any] = dict(_DEFAULT_STATE_SCHEMA_DATA)
    if path:
        resolved = _resolve_config_path(path)
        try:
            with resolved.open("r", encoding="utf-8") as handle:
                overrides = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigError(f"Unable to read schema file {resolved}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in schema file {resolved}: {exc}") from exc
        if overrides is None:
            overrides = {}
        if not isinstance(overrides, Mapping):
            raise ConfigError(f"Schema file {resolved} must contain a mapping")
        data.update(overrides)
    try:
        return StateSchema.from_mapping(data)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid state schema: {exc}") from exc


class Config:
    """Process configuration sourced from the environment.

    Each setting is read from its ``TFBACKEND_`` variable first and then from
    the bare legacy name (``DATABASE``, ``IP``, ``PORT``). Invalid values raise
    :class:`ConfigError`, which is fatal to startup.
    """

    def __init__(self) -> None:
        database_file, _ = self._get_first_nonempty_env(
            "TFBACKEND_DATABASE",
            "DATABASE",
        )
        self.DATABASE_FILE: str = database_file or DEFAULT_DATABASE_FILE
        database_url_env = os.getenv("TFBACKEND_DATABASE_URL", "").strip()
        self.DATABASE_URL: str = database_url_env or self._sqlite_url(self.DATABASE_FILE)
        self.DATABASE_ECHO: bool = self._parse_bool(os.getenv("TFBACKEND_DATABASE_ECHO"))

        listen_ip, listen_ip_source = self._get_first_nonempty_env("TFBACKEND_IP", "IP")
        self.LISTEN_IP: str = self._parse_ip(
            listen_ip or DEFAULT_LISTEN_IP,
            env_var=listen_ip_source or "TFBACKEND_IP",
        )
        listen_port, listen_port_source = self._get_first_nonempty_env(
            "TFBACKEND_PORT",
            "PORT",
        )
        self.LISTEN_PORT: int = self._parse_port(
            listen_port,
            default=DEFAULT_LISTEN_PORT,
            env_var=listen_port_source or "TFBACKEND_PORT",
        )

        self.DEBUG: bool = self._parse_bool(os.getenv("TFBACKEND_DEBUG"))
        schema_file = os.getenv("TFBACKEND_SCHEMA_FILE", "").strip()
        self.SCHEMA_FILE: Optional[str] = schema_file or None
        self.STATE_SCHEMA: StateSchema = load_state_schema(self.SCHEMA_FILE)
        self.STATE_ROUTE_PREFIX: str = STATE_ROUTE_PREFIX
        self.DUMP_ROUTE_PREFIX: str = DUMP_ROUTE_PREFIX

    @property
    def listen_address(self) -> str:
        if ":" in self.LISTEN_IP:
            return f"[{self.LISTEN_IP}]:{self.LISTEN_PORT}"
        return f"{self.LISTEN_IP}:{self.LISTEN_PORT}"

    @staticmethod
    def _sqlite_url(database_file: str) -> str:
        if database_file == _SQLITE_MEMORY:
            return f"sqlite+aiosqlite:///{_SQLITE_MEMORY}"
        sqlite_path = Path(database_file).expanduser()
        try:
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning(
                "Unable to create directory for SQLite database.",
                extra={
                    "category": "config",
                    "config_path": str(sqlite_path.parent),
                    "stage": "database_path_resolve",
                    "error_type": type(exc).__name__,
                },
            )
        return f"sqlite+aiosqlite:///{sqlite_path.resolve().as_posix()}"

    @staticmethod
    def _get_first_nonempty_env(*keys: str) -> Tuple[Optional[str], Optional[str]]:
        for key in keys:
            value = os.getenv(key)
            if value is None:
                continue
            stripped = value.strip()
            if stripped:
                return stripped, key
        return None, None

    @staticmethod
    def _parse_bool(raw_value: Optional[str]) -> bool:
        return raw_value is not None and raw_value.strip().lower() in _TRUTHY_VALUES

    @staticmethod
    def _parse_ip(raw_value: str, *, env_var: str) -> str:
        try:
            return str(ipaddress.ip_address(raw_value))
        except ValueError as exc:
            raise ConfigError(f"Unable to parse {raw_value!r} from {env_var} as an IP address") from exc

    @staticmethod
    def _parse_port(raw_value: Optional[str], *, default: int, env_var: str) -> int:
        if raw_value is None:
            return default
        try:
            value = int(raw_value)
        except ValueError as exc:
            raise ConfigError(f"Unable to convert {raw_value!r} from {env_var} to an integer") from exc
        if not 0 <= value <= 65535:
            raise ConfigError(f"{env_var} must be between 0 and 65535; got {value}")
        return value
