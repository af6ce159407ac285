"""Shared pytest fixtures for the flow automation engine test suite.

Provides:
- Test settings (short budgets, no retry delays)
- In-memory flow, execution and schedule stores
- Fake collaborators: record store, HTTP transport, script sandbox
- An AutomationEngine wired to all of the above
- In-memory async SQLite database for the SQLAlchemy stores
"""

import asyncio
import os
from collections import deque
from typing import Any, AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from automation.engine import AutomationEngine  # noqa: E402
from automation.inmemory import InMemoryExecutionStore, InMemoryFlowStore, InMemoryScheduleStore  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_session_factory  # noqa: E402
from nodes.base_node import NodeServices  # noqa: E402
from nodes.collaborators import HttpResponse, ScriptError, ScriptResult  # noqa: E402


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeRecordStore:
    """Dict-backed RecordStore."""

    def __init__(self):
        self.records: dict[str, dict[str, dict[str, Any]]] = {}

    async def create(self, object_name: str, data: dict[str, Any]) -> dict[str, Any]:
        record = {"id": uuid4().hex[:8], **data}
        self.records.setdefault(object_name, {})[record["id"]] = record
        return dict(record)

    async def update(self, object_name: str, record_id: str, data: dict[str, Any]) -> dict[str, Any]:
        record = self.records.setdefault(object_name, {}).setdefault(record_id, {"id": record_id})
        record.update(data)
        return dict(record)

    async def delete(self, object_name: str, record_id: str) -> bool:
        return self.records.get(object_name, {}).pop(record_id, None) is not None

    async def get(self, object_name: str, record_id: str) -> Optional[dict[str, Any]]:
        record = self.records.get(object_name, {}).get(record_id)
        return dict(record) if record else None


class FakeHttpTransport:
    """Scripted HttpTransport.

    Queue responses (``HttpResponse``) or exceptions with ``script``; once the
    script is exhausted every call returns ``default``. When ``gate`` is set,
    calls block until it is.
    """

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self._script: deque = deque()
        self.default = HttpResponse(status_code=200, body={"ok": True})
        self.gate: Optional[asyncio.Event] = None

    def script(self, *outcomes) -> None:
        self._script.extend(outcomes)

    async def send(self, method, url, headers=None, body=None, timeout_ms=None) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        if self.gate is not None:
            await self.gate.wait()
        outcome = self._script.popleft() if self._script else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSandbox:
    """ScriptSandbox that runs Python callables registered by source name."""

    def __init__(self):
        self.scripts: dict[str, Any] = {}

    async def run(self, source, variables, language="javascript", timeout_ms=None) -> ScriptResult:
        func = self.scripts.get(source)
        if func is None:
            raise ScriptError(f"Unknown script '{source}'")
        output = func(variables)
        return ScriptResult(output=output, variables=output.get("set", {}))


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    """Settings with budgets short enough for tests."""
    return Settings(
        ENVIRONMENT="testing",
        EXECUTION_TIMEOUT_SECONDS=10,
        DEFAULT_NODE_TIMEOUT_SECONDS=5,
        DEFAULT_MAX_RETRIES=0,
        RETRY_BASE_DELAY_SECONDS=0,
        WAIT_DEFAULT_TIMEOUT_MS=60_000,
        ENGINE_SWEEP_INTERVAL_SECONDS=0.01,
        SCHEDULER_TICK_SECONDS=0.01,
        SCHEDULER_MAX_CONSECUTIVE_FAILURES=3,
    )


@pytest.fixture
def flow_store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def execution_store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def schedule_store() -> InMemoryScheduleStore:
    return InMemoryScheduleStore()


@pytest.fixture
def records() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def http() -> FakeHttpTransport:
    return FakeHttpTransport()


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def engine(flow_store, execution_store, records, http, sandbox, settings) -> AutomationEngine:
    services = NodeServices(record_store=records, http=http, sandbox=sandbox)
    return AutomationEngine(flow_store, execution_store, services=services, settings=settings)


@pytest.fixture
def install(flow_store):
    """Save flow definitions into the flow store."""

    async def _install(*flows):
        for flow in flows:
            await flow_store.save(flow)
        return flows[0] if len(flows) == 1 else flows

    return _install


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """A fresh in-memory SQLite database per test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> AsyncGenerator:
    yield create_session_factory(db_engine)
