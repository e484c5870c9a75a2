"""Application composition root for the state backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tfbackend.config import Config
from tfbackend.dispatcher import LockDispatcher
from tfbackend.logging_config import setup_logging
from tfbackend.state_store import StateStore
from tfbackend.utils.logging_helpers import ContextLoggerAdapter, add_context


@dataclass(frozen=True)
class ApplicationServices:
    """Container for infrastructure dependencies shared by the HTTP layer."""

    logger: ContextLoggerAdapter
    store: StateStore
    dispatcher: LockDispatcher


def _make_service_logger(
    parent_logger: ContextLoggerAdapter, child_name: str, category: str
) -> ContextLoggerAdapter:
    """Return a child logger enriched with the provided ``category`` context."""

    return parent_logger.getChild(child_name).bind(request_category=category)


def build_store(cfg: Config, logger: ContextLoggerAdapter) -> StateStore:
    """Create the state store for ``cfg``; the table is created on app startup."""

    logger.info(
        "Opening state database",
        extra={
            "event_type": "store_open",
            "table": cfg.STATE_SCHEMA.table_name,
            "database_echo": cfg.DATABASE_ECHO,
        },
    )
    return StateStore.from_url(
        cfg.DATABASE_URL,
        cfg.STATE_SCHEMA,
        echo=cfg.DATABASE_ECHO,
        logger=logger,
    )


def build_services(cfg: Config) -> ApplicationServices:
    """Initialise logging and infrastructure dependencies for the backend."""

    setup_logging(logging.INFO, debug_mode=cfg.DEBUG)
    logger = add_context(logging.getLogger("tfbackend"))

    store = build_store(cfg, _make_service_logger(logger, "store", "storage"))
    dispatcher = LockDispatcher(
        store,
        logger=_make_service_logger(logger, "dispatcher", "lock_protocol"),
    )
    return ApplicationServices(logger=logger, store=store, dispatcher=dispatcher)


__all__ = ["ApplicationServices", "build_services", "build_store"]
