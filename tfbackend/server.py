"""aiohttp application exposing the state protocol and diagnostics."""

from __future__ import annotations

import base64
import logging
import time
from http import HTTPStatus
from typing import Any, Dict, List, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tfbackend.config import DUMP_ROUTE_PREFIX, STATE_ROUTE_PREFIX
from tfbackend.dispatcher import SUPPORTED_METHODS, DispatchResult, LockDispatcher
from tfbackend.errors import LockParseError, StorageError
from tfbackend.fingerprint import request_state_id
from tfbackend.metrics import REQUEST_DURATION, REQUESTS_TOTAL
from tfbackend.state_store import StateRecord, StateStore
from tfbackend.utils.logging_helpers import ContextLoggerAdapter, LoggerLike, add_context

LOGGER = logging.getLogger("tfbackend.server")

LOCK_ID_PARAM = "ID"


def _encode_blob(value: bytes) -> Optional[str]:
    if not value:
        return None
    return base64.b64encode(value).decode("ascii")


def _server_error(exc: Exception) -> DispatchResult:
    return DispatchResult(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc).encode("utf-8"))


def _dump_payload(records: List[StateRecord]) -> List[Dict[str, Any]]:
    return [
        {"data": _encode_blob(record.data), "lock": _encode_blob(record.lock)}
        for record in records
    ]


class StateBackendServer:
    """HTTP handlers bound to one :class:`StateStore`."""

    def __init__(
        self,
        store: StateStore,
        dispatcher: LockDispatcher,
        *,
        logger: Optional[LoggerLike] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._logger = logger if logger is not None else LOGGER

    async def startup(self, app: web.Application) -> None:
        await self._store.create_schema()
        self._logger.info(
            "State backend initialised",
            extra={"event_type": "startup", "table": self._store.schema.table_name},
        )

    async def cleanup(self, app: web.Application) -> None:
        await self._store.close()

    async def health(self, _: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def metrics(self, _: web.Request) -> web.Response:
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def handle_state(self, request: web.Request) -> web.Response:
        method = request.method
        metric_method = method if method in SUPPORTED_METHODS else "OTHER"
        started = time.perf_counter()

        state_id = request_state_id(request)
        log = add_context(self._logger, state_id=state_id, method=method, path=request.path)
        body = await request.read()
        log.debug("Request body: %s", body)

        lock_id = request.query.get(LOCK_ID_PARAM, "")
        try:
            result = await self._dispatcher.dispatch(method, state_id, body, lock_id)
        except (StorageError, LockParseError) as exc:
            log.error(
                "State request failed: %s", exc, extra={"error_type": type(exc).__name__}
            )
            result = _server_error(exc)
        finally:
            REQUEST_DURATION.labels(method=metric_method).observe(time.perf_counter() - started)

        REQUESTS_TOTAL.labels(method=metric_method, status=str(int(result.status))).inc()
        return self._respond(log, result)

    async def handle_dump(self, request: web.Request) -> web.Response:
        log = add_context(self._logger, method=request.method, path=request.path)
        try:
            records = await self._store.scan()
        except StorageError as exc:
            log.error("State dump failed: %s", exc, extra={"error_type": type(exc).__name__})
            return self._respond(log, _server_error(exc))
        log.info("Dumped %d state records", len(records))
        return web.json_response(_dump_payload(records))

    @staticmethod
    def _respond(log: ContextLoggerAdapter, result: DispatchResult) -> web.Response:
        status = int(result.status)
        # State blobs stay out of INFO logs.
        log.info("Response: %d (%d bytes)", status, len(result.body), extra={"status": status})
        log.debug("Response body: %s", result.body, extra={"status": status})
        return web.Response(status=status, body=result.body)


def create_app(
    store: StateStore,
    dispatcher: Optional[LockDispatcher] = None,
    *,
    logger: Optional[LoggerLike] = None,
    state_prefix: str = STATE_ROUTE_PREFIX,
    dump_prefix: str = DUMP_ROUTE_PREFIX,
) -> web.Application:
    server = StateBackendServer(
        store,
        dispatcher if dispatcher is not None else LockDispatcher(store),
        logger=logger,
    )
    app = web.Application()
    app.router.add_get("/health", server.health)
    app.router.add_get("/metrics", server.metrics)
    app.router.add_route("*", f"{dump_prefix}{{tail:.*}}", server.handle_dump)
    app.router.add_route("*", f"{state_prefix}{{tail:.*}}", server.handle_state)
    app.on_startup.append(server.startup)
    app.on_cleanup.append(server.cleanup)
    return app


__all__ = ["StateBackendServer", "create_app"]
