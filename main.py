#!/usr/bin/env python3

import logging
import sys
from typing import Mapping

from aiohttp import web
from dotenv import load_dotenv

from tfbackend.bootstrap import build_services
from tfbackend.config import Config
from tfbackend.errors import ConfigError, StorageError
from tfbackend.logging_config import setup_logging
from tfbackend.server import create_app


def _startup_log_extra(*, stage: str, additional: Mapping[str, object] | None = None) -> dict:
    """Return a structured ``extra`` payload for startup logs."""

    extra = {"category": "startup", "stage": stage}
    if additional:
        extra.update(dict(additional))
    return extra


def main() -> None:
    load_dotenv()
    try:
        cfg = Config()
    except ConfigError as exc:
        setup_logging()
        logging.getLogger("tfbackend").error(
            str(exc),
            extra=_startup_log_extra(stage="validation", additional={"error_type": "ConfigError"}),
        )
        sys.exit(1)

    try:
        services = build_services(cfg)
    except StorageError as exc:
        logging.getLogger("tfbackend").error(
            "Unable to open state database: %s",
            exc,
            extra=_startup_log_extra(stage="database", additional={"error_type": "StorageError"}),
        )
        sys.exit(1)

    logger = services.logger.getChild("main")
    app = create_app(
        services.store,
        services.dispatcher,
        logger=services.logger.getChild("server"),
        state_prefix=cfg.STATE_ROUTE_PREFIX,
        dump_prefix=cfg.DUMP_ROUTE_PREFIX,
    )
    logger.info(
        "Listening on %s",
        cfg.listen_address,
        extra=_startup_log_extra(stage="serve", additional={"debug_mode": cfg.DEBUG}),
    )
    try:
        web.run_app(
            app,
            host=cfg.LISTEN_IP,
            port=cfg.LISTEN_PORT,
            handler_cancellation=True,
            print=None,
        )
    except StorageError as exc:
        logger.error(
            "State backend stopped: %s",
            exc,
            extra=_startup_log_extra(stage="database", additional={"error_type": "StorageError"}),
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
