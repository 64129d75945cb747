from __future__ import annotations

import json
import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

# Ensure environment variables are set before application settings are imported.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SYSTEM_A_DATABASE_URL", "sqlite+aiosqlite:///./tests/system_a.db")
os.environ.setdefault("SYSTEM_B_DATABASE_URL", "sqlite+aiosqlite:///./tests/system_b.db")
os.environ.setdefault("DATABASE_POOL_PRE_PING", "false")
os.environ.setdefault("ENABLE_SYNC_PIPELINES", "false")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "test-access-key")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test-secret-key")
os.environ.setdefault("SYNC_RETRY_INITIAL_DELAY", "0")
os.environ.setdefault("LOG_FORMAT", "text")

from syncbridge.core.config import settings
from syncbridge.db.session import ENGINES, SESSION_FACTORIES
from syncbridge.main import create_app
from syncbridge.models.base import Base
from syncbridge.schemas.sync_event import Provenance
from syncbridge.services.dead_letter import DeadLetterHandler
from syncbridge.services.systems import SyncDirection, build_descriptors, table_prefixes
from syncbridge.workers.sync_pipeline import SyncPipeline, build_pipeline

QUEUE_BASE_URL = "http://localhost:4566/000000000000"


class RecordingPublisher:
    """Dead-letter publisher double that keeps every message it is given."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: list[dict[str, Any]] = []
        self.fail = fail

    async def publish(self, message: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("dead-letter queue unavailable")
        self.messages.append(message)


@pytest.fixture
def stores():
    return build_descriptors(settings)


@pytest_asyncio.fixture(autouse=True)
async def reset_databases(stores) -> AsyncGenerator[None, None]:
    for system, engine in ENGINES.items():
        async with engine.begin() as conn:
            await conn.run_sync(stores[system].metadata.drop_all)
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
            await conn.run_sync(stores[system].metadata.create_all)
    yield


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def dead_letters(publisher) -> DeadLetterHandler:
    return DeadLetterHandler(publisher)


@pytest.fixture
def make_pipeline(stores, dead_letters) -> Callable[[Provenance, Provenance], SyncPipeline]:
    def _make(source: Provenance, target: Provenance) -> SyncPipeline:
        return build_pipeline(
            SyncDirection(source=stores[source], target=stores[target]),
            queue_urls=[f"{QUEUE_BASE_URL}/{stores[source].table_name('users')}"],
            dead_letters=dead_letters,
            config=settings,
            prefixes=table_prefixes(stores),
        )

    return _make


@pytest.fixture
def capture_message() -> Callable[..., str]:
    """Build an enveloped change message as the capture agent would emit it."""

    def _build(
        *,
        after: dict[str, Any] | None = None,
        before: dict[str, Any] | None = None,
        op: str = "c",
        ts_ms: int | None = 1_700_000_000_000,
        **extra: Any,
    ) -> str:
        message: dict[str, Any] = {"before": before, "after": after, "op": op, **extra}
        if ts_ms is not None:
            message["source"] = {"ts_ms": ts_ms}
        return json.dumps(message)

    return _build


@pytest.fixture
def fetch_rows(stores) -> Callable[..., Any]:
    async def _fetch(system: Provenance, entity_type: str) -> list[dict[str, Any]]:
        table = stores[system].table(entity_type)
        async with SESSION_FACTORIES[system]() as session:
            result = await session.execute(select(table).order_by(table.c.id))
            return [dict(row) for row in result.mappings().all()]

    return _fetch


@pytest_asyncio.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
