"""
Test configuration and fixtures.
Uses a throwaway SQLite database per test. Mocks Redis and the chat platform.
"""
import copy
from typing import Optional
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from motocrm.config import Settings
from motocrm.database import Base
from motocrm.integrations.platform_base import ChatPlatformClient, PlatformError
import motocrm.models  # noqa: F401  registers every table on Base.metadata


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakePlatformClient(ChatPlatformClient):
    """In-memory chat platform. Subscribers are raw dicts keyed by id."""

    name = "fake"

    def __init__(self):
        self.subscribers: dict[str, dict] = {}
        # subscriber_id -> exception raised by every call for that subscriber
        self.failures: dict[str, Exception] = {}
        # exceptions raised, in order, by the next mutating calls
        self.fail_next: list[Exception] = []
        self.calls: list[tuple] = []

    def add_subscriber(self, subscriber_id: str, **fields) -> dict:
        sub = {"id": subscriber_id, "tags": []}
        sub.update(fields)
        self.subscribers[subscriber_id] = sub
        return sub

    def tag_names(self, subscriber_id: str) -> list[str]:
        return [t["name"] for t in self.subscribers[subscriber_id].get("tags", [])]

    def _check(self, subscriber_id: str, mutating: bool = False) -> None:
        if subscriber_id in self.failures:
            raise self.failures[subscriber_id]
        if mutating and self.fail_next:
            raise self.fail_next.pop(0)

    async def get_subscriber(self, subscriber_id: str) -> Optional[dict]:
        self.calls.append(("get_subscriber", subscriber_id))
        self._check(subscriber_id)
        sub = self.subscribers.get(subscriber_id)
        return copy.deepcopy(sub) if sub else None

    async def find_subscriber_by_phone(self, phone: str) -> Optional[dict]:
        self.calls.append(("find_subscriber_by_phone", phone))
        for sub in self.subscribers.values():
            if phone in (sub.get("phone"), sub.get("whatsapp_phone")):
                return copy.deepcopy(sub)
        return None

    async def add_tag(self, subscriber_id: str, tag: str) -> None:
        self.calls.append(("add_tag", subscriber_id, tag))
        self._check(subscriber_id, mutating=True)
        sub = self.subscribers.setdefault(subscriber_id, {"id": subscriber_id, "tags": []})
        if tag not in [t["name"] for t in sub["tags"]]:
            sub["tags"].append({"id": len(sub["tags"]) + 1, "name": tag})

    async def remove_tag(self, subscriber_id: str, tag: str) -> None:
        self.calls.append(("remove_tag", subscriber_id, tag))
        self._check(subscriber_id, mutating=True)
        sub = self.subscribers.get(subscriber_id)
        if sub:
            sub["tags"] = [t for t in sub["tags"] if t["name"] != tag]

    async def set_custom_field(self, subscriber_id: str, field_name: str, value) -> None:
        self.calls.append(("set_custom_field", subscriber_id, field_name, value))
        self._check(subscriber_id, mutating=True)
        sub = self.subscribers.setdefault(subscriber_id, {"id": subscriber_id, "tags": []})
        sub.setdefault("custom_fields", {})[field_name] = value

    async def update_subscriber(self, subscriber_id: str, fields: dict) -> None:
        self.calls.append(("update_subscriber", subscriber_id, dict(fields)))
        self._check(subscriber_id, mutating=True)
        self.subscribers.setdefault(subscriber_id, {"id": subscriber_id, "tags": []}).update(fields)

    async def send_text(self, subscriber_id: str, text: str) -> None:
        self.calls.append(("send_text", subscriber_id, text))
        self._check(subscriber_id, mutating=True)


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("motocrm.utils.redis_client.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.eval = AsyncMock(return_value=1)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database so every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'motocrm_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def platform():
    return FakePlatformClient()


@pytest.fixture
def platform_error():
    return PlatformError("ManyChat /fb/subscriber/getInfo returned 503: upstream down", status_code=503)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        manychat_api_key="test-key",
        manychat_webhook_verify_token="verify-me",
        sync_drain_enabled=False,
        sync_max_attempts=5,
        bulk_sync_item_delay_ms=0,
    )


@pytest.fixture
def services(test_settings, session_factory, platform):
    from motocrm.services.bulk_sync import InMemoryProgressStore
    from motocrm.services.container import build_services
    return build_services(
        test_settings,
        session_factory=session_factory,
        platform=platform,
        progress_store=InMemoryProgressStore(ttl_seconds=60),
    )


@pytest.fixture
def processor(services):
    return services.processor


@pytest.fixture
def sync_queue(services):
    return services.sync_queue


@pytest.fixture
def app(services):
    from motocrm.main import create_app
    return create_app(services=services)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
