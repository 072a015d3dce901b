"""
Shared pytest fixtures
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from process_engine.config import EngineSettings
from process_engine.core import ProcessEngine
from process_engine.exceptions import UpstreamError
from process_engine.integrations import HttpClient, HttpResponse, InMemoryLowCodeCRUD
from process_engine.storage import create_in_memory_store


class FakeClock:
    """Naive UTC clock the tests move by hand"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 8, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeHttpClient(HttpClient):
    """Answers from a queue of canned responses and records every request"""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.responses: List[Any] = []
        self.default = HttpResponse(200, {"ok": True})

    def queue(self, *responses: Any):
        self.responses.extend(responses)

    async def request(self, method, url, headers=None, body=None, timeout_ms=30000):
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body})
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if response.status_code >= 400:
            raise UpstreamError(f"{method} {url} returned {response.status_code}",
                                status_code=response.status_code, body_excerpt=str(response.body))
        return response


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        database_url="sqlite+aiosqlite:///:memory:",
        worker_id="test-worker",
        lease_ttl_seconds=5,
        evaluator_isolation="inline",
        evaluator_timeout_ms=2000,
    )


@pytest.fixture
def store(clock):
    return create_in_memory_store(clock)


@pytest.fixture
def http() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def crud() -> InMemoryLowCodeCRUD:
    return InMemoryLowCodeCRUD()


@pytest.fixture
async def engine(store, settings, http, crud, clock):
    """Engine on the in-memory store; sleeps return immediately"""
    engine = ProcessEngine(store, settings=settings, http=http, crud=crud,
                           clock=clock, sleep=AsyncMock())
    await engine.start()
    yield engine
    await engine.shutdown()


@pytest.fixture
def deploy(engine):
    """Create and activate a workflow from a definition"""

    async def _deploy(definition: Dict[str, Any], owner_id: str = "owner"):
        workflow = await engine.create_workflow(definition, owner_id=owner_id)
        return await engine.activate_workflow(workflow.id, owner_id)

    return _deploy


@pytest.fixture
def linear_definition() -> Dict[str, Any]:
    return {
        "name": "Linear",
        "variables": {"greeting": "hello"},
        "steps": [
            {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": "double"},
            {
                "id": "double",
                "kind": "script",
                "name": "Double",
                "config": {"code": "total = amount * 2\nreturn total"},
                "outputs": {"result": "doubled"},
                "nextSteps": "shout",
            },
            {
                "id": "shout",
                "kind": "dataTransform",
                "name": "Shout",
                "config": {"expression": "upper(greeting)", "targetField": "loud"},
            },
        ],
    }


@pytest.fixture
def approval_definition() -> Dict[str, Any]:
    return {
        "name": "Expense approval",
        "steps": [
            {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": "approve"},
            {
                "id": "approve",
                "kind": "approval",
                "name": "Manager approval",
                "config": {"approvers": ["alice", "bob"], "title": "Approve ${amount}"},
                "nextSteps": "record",
            },
            {
                "id": "record",
                "kind": "action",
                "name": "Record",
                "config": {"action": "set_variables", "parameters": {"approved": True}},
            },
        ],
    }
