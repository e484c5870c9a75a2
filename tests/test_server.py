"""End-to-end tests for the aiohttp state backend."""

from __future__ import annotations

import asyncio
import base64
import logging

import pytest
import pytest_asyncio
from aiohttp import BasicAuth
from aiohttp.test_utils import TestClient, TestServer

from tfbackend.dispatcher import LockDispatcher
from tfbackend.fingerprint import state_id
from tfbackend.server import create_app
from tfbackend.state_store import StateRecord, StateStore


@pytest_asyncio.fixture
async def backend_store(database_url):
    # Schema creation and engine disposal run through the app hooks.
    return StateStore.from_url(database_url)


@pytest_asyncio.fixture
async def client(backend_store):
    app = create_app(backend_store)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


async def _call(client, method, path="/s/network", data=b"", **kwargs):
    response = await client.request(method, path, data=data, **kwargs)
    return response.status, await response.read()


@pytest.mark.asyncio
async def test_get_of_unwritten_state(client):
    assert await _call(client, "GET") == (200, b"")


@pytest.mark.asyncio
async def test_second_lock_gets_first_lock_body(client, lock_envelope):
    first = lock_envelope("testlockid")

    assert await _call(client, "LOCK", data=first) == (200, b"")
    assert await _call(client, "LOCK", data=lock_envelope("testlockid2")) == (423, first)


@pytest.mark.asyncio
async def test_unlock_is_idempotent(client, lock_envelope):
    await _call(client, "LOCK", data=lock_envelope("testlockid"))

    assert await _call(client, "UNLOCK", params={"ID": "testlockid"}) == (200, b"")
    assert await _call(client, "UNLOCK", params={"ID": "testlockid"}) == (200, b"")
    assert await _call(client, "LOCK", data=lock_envelope("next")) == (200, b"")


@pytest.mark.asyncio
async def test_post_round_trip_under_lock(client, lock_envelope):
    state = b'{"version":4,"serial":3}'
    await _call(client, "LOCK", data=lock_envelope("holder"))

    assert await _call(client, "POST", data=state, params={"ID": "holder"}) == (200, b"")
    assert await _call(client, "GET") == (200, state)


@pytest.mark.asyncio
async def test_post_with_wrong_id_leaves_data_unchanged(client, lock_envelope):
    lock = lock_envelope("holder")
    await _call(client, "POST", data=b"state-v1")
    await _call(client, "LOCK", data=lock)

    assert await _call(client, "POST", data=b"state-v2", params={"ID": "other"}) == (423, lock)
    assert await _call(client, "GET") == (200, b"state-v1")


@pytest.mark.asyncio
async def test_delete_empties_data_and_keeps_lock(client, lock_envelope):
    lock = lock_envelope("holder")
    await _call(client, "POST", data=b"state-v1")
    await _call(client, "LOCK", data=lock)

    assert await _call(client, "DELETE", params={"ID": "holder"}) == (200, b"")
    assert await _call(client, "GET") == (200, b"")
    assert await _call(client, "LOCK", data=lock_envelope("other")) == (423, lock)


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["PUT", "PATCH"])
async def test_unsupported_verb(client, method):
    assert await _call(client, method, data=b"x") == (501, b"Not implemented")


@pytest.mark.asyncio
async def test_malformed_stored_lock_is_a_server_error(client, backend_store):
    key = state_id("/s/network")
    await backend_store.upsert(key, StateRecord(data=b"v1", lock=b'{"Who":"x"}'))

    status, body = await _call(client, "POST", data=b"v2", params={"ID": "x"})

    assert status == 500
    assert b'error parsing "ID"' in body
    assert (await backend_store.lookup(key)).data == b"v1"


@pytest.mark.asyncio
async def test_basic_auth_separates_states(client):
    alice = BasicAuth("alice", "secret")
    bob = BasicAuth("bob", "secret")

    await _call(client, "POST", data=b"alice-state", auth=alice)

    assert await _call(client, "GET", auth=alice) == (200, b"alice-state")
    assert await _call(client, "GET", auth=bob) == (200, b"")
    assert await _call(client, "GET") == (200, b"")


@pytest.mark.asyncio
async def test_paths_are_separate_states(client):
    await _call(client, "POST", "/s/network", data=b"network")

    assert await _call(client, "GET", "/s/compute") == (200, b"")
    assert await _call(client, "GET", "/s/network") == (200, b"network")


@pytest.mark.asyncio
async def test_dump_lists_every_record(client, lock_envelope):
    lock = lock_envelope("holder")
    await _call(client, "POST", data=b"state-v1")
    await _call(client, "LOCK", data=lock)

    response = await client.get("/health/dump/")

    assert response.status == 200
    assert await response.json() == [
        {
            "data": base64.b64encode(b"state-v1").decode("ascii"),
            "lock": base64.b64encode(lock).decode("ascii"),
        }
    ]


@pytest.mark.asyncio
async def test_dump_of_empty_table(client):
    response = await client.get("/health/dump/")

    assert response.status == 200
    assert await response.json() == []


@pytest.mark.asyncio
async def test_dump_reports_empty_columns_as_null(client):
    await _call(client, "POST", data=b"state-v1")

    response = await client.get("/health/dump/")

    assert await response.json() == [
        {"data": base64.b64encode(b"state-v1").decode("ascii"), "lock": None}
    ]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status == 200
    assert await response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_metrics_exposes_request_counters(client):
    await _call(client, "GET")

    response = await client.get("/metrics")
    text = await response.text()

    assert response.status == 200
    assert "tfbackend_requests_total" in text
    assert "tfbackend_storage_operation_duration_seconds" in text


@pytest.mark.asyncio
async def test_request_logs_carry_state_context(client, caplog):
    await _call(client, "POST", data=b"secret-state")

    with caplog.at_level(logging.DEBUG, logger="tfbackend.server"):
        await _call(client, "GET")

    responses = [
        record
        for record in caplog.records
        if record.name == "tfbackend.server"
        and getattr(record, "method", None) == "GET"
        and record.getMessage().startswith("Response")
    ]
    info = [record for record in responses if record.levelno == logging.INFO]
    debug = [record for record in responses if record.levelno == logging.DEBUG]
    assert len(info) == 1
    assert info[0].state_id == state_id("/s/network")
    assert info[0].method == "GET"
    assert info[0].path == "/s/network"
    assert info[0].status == 200
    assert "secret-state" not in info[0].getMessage()
    assert any("secret-state" in record.getMessage() for record in debug)


class _StallingStore:
    """Delegates reads and parks every conditional write until cancelled."""

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self.write_started = asyncio.Event()
        self.write_cancelled = asyncio.Event()

    async def lookup(self, key: str) -> StateRecord:
        return await self._store.lookup(key)

    async def compare_and_set(self, key: str, **kwargs) -> bool:
        self.write_started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.write_cancelled.set()
            raise
        return await self._store.compare_and_set(key, **kwargs)


@pytest.mark.asyncio
async def test_client_disconnect_cancels_pending_write(backend_store, lock_envelope):
    stalling = _StallingStore(backend_store)
    app = create_app(backend_store, LockDispatcher(stalling))  # type: ignore[arg-type]
    key = state_id("/s/network")

    async with TestClient(TestServer(app)) as test_client:
        pending = asyncio.ensure_future(
            test_client.request("LOCK", "/s/network", data=lock_envelope("holder"))
        )
        await asyncio.wait_for(stalling.write_started.wait(), timeout=5)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        await asyncio.wait_for(stalling.write_cancelled.wait(), timeout=5)
        assert await backend_store.lookup(key) == StateRecord(id=key)
