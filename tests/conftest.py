"""
Shared test fixtures for the erp-sync test suite.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Union
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from erp_sync.config import ThrottleConfig
from erp_sync.models.streams import STREAMS
from erp_sync.services.database_service import DatabaseService
from erp_sync.services.erp_client import ErpClient

Handler = Union[List[Dict[str, Any]], Callable[[str], List[Dict[str, Any]]]]


class FakeExecutor:
    """Stand-in for QueryExecutor answering by query tag"""

    def __init__(self, responses: Optional[Dict[str, Handler]] = None):
        self.responses: Dict[str, Handler] = dict(responses or {})
        self.calls: List[Dict[str, str]] = []
        self.failures: Dict[str, Exception] = {}

    async def execute(self, query: str, tag: str = "") -> List[Dict[str, Any]]:
        self.calls.append({"tag": tag, "query": query})
        if tag in self.failures:
            raise self.failures[tag]
        handler = self.responses.get(tag, [])
        rows = handler(query) if callable(handler) else handler
        return [dict(row) for row in rows]

    def tags(self) -> List[str]:
        return [call["tag"] for call in self.calls]

    def queries(self, tag: str) -> List[str]:
        return [call["query"] for call in self.calls if call["tag"] == tag]


def json_response(payload: Any, status: int = 200, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(payload).encode(), headers={
        "Content-Type": "application/json", **(headers or {})
    })


def make_client(handler: Callable[[httpx.Request], httpx.Response], **throttle: Any) -> ErpClient:
    """ErpClient over an httpx.MockTransport with instant sleeps and no jitter"""
    return ErpClient(
        token="test-token",
        throttle=ThrottleConfig(**throttle),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=AsyncMock(),
        rand=lambda: 0.0,
    )


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def db(tmp_path) -> DatabaseService:
    """Temporary SQLite store with every table created"""
    service = DatabaseService(str(tmp_path / "store.db"))
    await service.connect()
    await service.create_tables(STREAMS.values())
    yield service
    await service.disconnect()


@pytest.fixture
def invoices():
    return STREAMS["invoices"]


@pytest.fixture
def fulfillments():
    return STREAMS["fulfillments"]


@pytest.fixture
def sales_orders():
    return STREAMS["sales_orders"]
