# tests/conftest.py
import asyncio
import sys

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient

from attendtrack.backend.api.auth import create_access_token
from attendtrack.backend.api.dependencies import get_store
from attendtrack.backend.api.utilities.limiter import limiter
from attendtrack.backend.db.redis_client import RedisDocumentStore
from attendtrack.backend.logging.logging_config import reset_log_once
from attendtrack.backend.main import app

# Windows asyncio needs the selector loop for pytest-asyncio.
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest_asyncio.fixture
async def fake_redis():
    """An in-process Redis, empty for every test."""
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def store(fake_redis):
    """A document store with every declared compound index ready."""
    document_store = RedisDocumentStore(fake_redis)
    await document_store.provision_indexes(["*"])
    return document_store


@pytest_asyncio.fixture
async def bare_store(fake_redis):
    """A document store on which no compound index has been provisioned."""
    return RedisDocumentStore(fake_redis)


@pytest.fixture(autouse=True)
def clear_log_once():
    reset_log_once()
    yield
    reset_log_once()


# ----- API fixtures -----

@pytest.fixture
def headers_for():
    """Builds bearer headers for a user id, signed like the identity provider's tokens."""
    def build(user_id: str, email: str | None = None) -> dict:
        token = create_access_token({"sub": user_id, "email": email or f"{user_id}@example.edu"})
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest_asyncio.fixture
async def client(store):
    """
    HTTP client against the app with the document store swapped for the
    in-process one. Seeds an admin, a student (barcode 2025CS001) and a viewer.
    """
    await store.set("users", "admin-1", {"role": "admin", "email": "admin-1@example.edu"})
    await store.set("users", "student-1", {"role": "student", "barcodeId": "2025CS001"})
    await store.set("users", "viewer-1", {"role": "viewer"})

    # Per-route request limits belong to slowapi, not to these tests
    limiter.enabled = False
    app.dependency_overrides[get_store] = lambda: store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()
    limiter.enabled = True


@pytest.fixture
def admin(headers_for):
    return headers_for("admin-1")


@pytest.fixture
def student(headers_for):
    return headers_for("student-1")


@pytest.fixture
def viewer(headers_for):
    return headers_for("viewer-1")
