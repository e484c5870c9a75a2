"""Pytest configuration shared across the test suite."""

import json
import sys
from pathlib import Path
from typing import Callable

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import pytest
import pytest_asyncio

from tfbackend.dispatcher import LockDispatcher
from tfbackend.state_store import StateStore


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"


@pytest_asyncio.fixture
async def store(database_url):
    state_store = StateStore.from_url(database_url)
    await state_store.create_schema()
    try:
        yield state_store
    finally:
        await state_store.close()


@pytest.fixture
def dispatcher(store) -> LockDispatcher:
    return LockDispatcher(store)


@pytest.fixture
def lock_envelope() -> Callable[..., bytes]:
    """Build a lock body shaped like the ones sent by infrastructure tools."""

    def _factory(lock_id: str, **fields: str) -> bytes:
        payload = {
            "ID": lock_id,
            "Operation": "OperationTypeApply",
            "Info": "",
            "Who": "mark@fry",
            "Version": "1.0.1",
            "Created": "2021-07-12T17:29:27.616435429Z",
            "Path": "",
        }
        payload.update(fields)
        return json.dumps(payload).encode("utf-8")

    return _factory
