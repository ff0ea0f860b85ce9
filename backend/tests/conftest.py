"""
Shared test fixtures.

Provides:
- Environment defaults (JWT secret, integration workspace credentials) set before any app module is imported
- A file-backed SQLite database per test, connected through the same Database handle the app uses
- Doubles for the integration platform and the downstream app-event webhook
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("INTEGRATION_APP_WORKSPACE_KEY", "test-workspace-key")
os.environ.setdefault("INTEGRATION_APP_WORKSPACE_SECRET", "test-workspace-secret")
os.environ.setdefault("APP_EVENTS_WEBHOOK_URL", "")

import pytest
import pytest_asyncio

from contact_store import ContactStore
from database import Database
from integration_client import ActionPage


def make_records(prefix: str, count: int, start: int = 0) -> list[dict]:
    """Provider-shaped contact records: c-0, c-1, ..."""
    return [
        {
            "id": f"{prefix}-{i}",
            "name": f"Contact {prefix} {i}",
            "fields": {"email": f"{prefix}{i}@example.com"},
        }
        for i in range(start, start + count)
    ]


class RecordingNotifier:
    """Stands in for AppEventNotifier; records every notification attempt."""

    def __init__(self, fail: bool = False):
        self.calls: list[dict] = []
        self.fail = fail

    async def notify_updated(self, record: dict, customer_id: str) -> bool:
        self.calls.append({"record": record, "customerId": customer_id})
        if self.fail:
            raise RuntimeError("downstream webhook unreachable")
        return True


class FakeGateway:
    """
    Stands in for IntegrationClient.

    pages maps (action_key, cursor) → ActionPage or an exception to raise.
    """

    def __init__(self, connections=None, pages=None, outputs=None, flows=None):
        self.connections = connections if connections is not None else []
        self.pages = pages or {}
        self.outputs = outputs or {}
        self.flows = flows or {}
        self.calls: list[tuple] = []

    async def list_connections(self, customer_id):
        self.calls.append(("list_connections", customer_id))
        if isinstance(self.connections, Exception):
            raise self.connections
        return list(self.connections)

    async def get_first_connection(self, customer_id):
        connections = await self.list_connections(customer_id)
        return connections[0] if connections else None

    async def run_action(self, customer_id, connection_id, action_key, cursor=None):
        self.calls.append(("run_action", customer_id, connection_id, action_key, cursor))
        page = self.pages[(action_key, cursor)]
        if isinstance(page, Exception):
            raise page
        return page

    async def run_action_raw(self, customer_id, connection_id, action_key, input=None):
        self.calls.append(("run_action_raw", customer_id, connection_id, action_key, input))
        return self.outputs.get(action_key, {})

    async def get_flow_instance(self, customer_id, connection_id, flow_key):
        self.calls.append(("get_flow_instance", customer_id, connection_id, flow_key))
        return dict(self.flows.get(flow_key, {}))

    async def set_flow_enabled(self, customer_id, connection_id, flow_key, enabled):
        self.calls.append(("set_flow_enabled", customer_id, connection_id, flow_key, enabled))
        instance = self.flows.setdefault(flow_key, {})
        instance["enabled"] = enabled
        return {"enabled": enabled}


def three_page_gateway(action_key: str = "get-contacts") -> FakeGateway:
    """Three pages (no cursor → B → C) holding 40, 40 and 10 records."""
    return FakeGateway(
        connections=[{"id": "conn-1"}],
        pages={
            (action_key, None): ActionPage(records=make_records("c", 40), next_cursor="B"),
            (action_key, "B"): ActionPage(records=make_records("c", 40, start=40), next_cursor="C"),
            (action_key, "C"): ActionPage(records=make_records("c", 10, start=80), next_cursor=None),
        },
    )


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'contacts.db'}"


@pytest_asyncio.fixture
async def database(sqlite_url):
    db = Database(sqlite_url)
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database):
    return ContactStore(database)


@pytest.fixture
def notifier():
    return RecordingNotifier()
