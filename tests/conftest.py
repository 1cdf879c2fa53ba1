"""
Shared pytest fixtures for the request catcher tests.

These fixtures provide fresh, independent instances of every component so
tests don't interfere with each other.
"""

import json
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from capture.channels import EmailChannel
from capture.data_store import DataStore
from capture.models import Principal
from fanout.event_bus import LiveFanoutBus, Subscriber
from fanout.ingestion import IngestionPipeline
from fanout.notification_router import NotificationPreferences, NotificationRouter
from fanout.registry import EndpointRegistry


class RecordingSink:
    """Stands in for websocket.send_json and remembers everything sent."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []

    async def __call__(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def events(self, name: str) -> list[Any]:
        return [m["data"] for m in self.messages if m["event"] == name]

    def live_sequences(self) -> list[int]:
        return [data["id"] for data in self.events("new_request")]

    def snapshot_sequences(self) -> list[int]:
        snapshots = self.events("init_requests")
        return [data["id"] for data in snapshots[-1]] if snapshots else []


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """
    Fixture directory with one owned endpoint and two settings rows.

    Alice saved her settings under her email; her endpoint was created with
    the same email as owner key.
    """
    (tmp_path / "endpoints.json").write_text(json.dumps([
        {
            "id": "ep-alice",
            "name": "Alice's Stripe hook",
            "owner_key": "alice@example.com",
            "created_at": "2026-01-05T10:00:00+00:00",
        },
        {
            "id": "ep-anon",
            "created_at": "2026-01-06T10:00:00+00:00",
        },
    ]))
    (tmp_path / "notification_settings.json").write_text(json.dumps([
        {
            "identity_key": "alice@example.com",
            "enabled": True,
            "notification_email": "alice@work.com",
            "updated_at": "2026-01-05T10:05:00+00:00",
        },
        {
            "identity_key": "bob@example.com",
            "enabled": False,
            "notification_email": "bob@example.com",
            "updated_at": "2026-01-05T10:05:00+00:00",
        },
    ]))
    return tmp_path


@pytest.fixture
def data_store() -> DataStore:
    """Fresh, empty DataStore for each test."""
    return DataStore()


@pytest.fixture
def seeded_store(data_dir: Path) -> DataStore:
    """DataStore seeded from the JSON fixtures."""
    return DataStore(data_dir=data_dir)


# =============================================================================
# Channel Fixtures
# =============================================================================

@pytest.fixture
def email_channel() -> EmailChannel:
    return EmailChannel(fail_rate=0.0)


@pytest.fixture
def raising_channel() -> EmailChannel:
    """A transport that raises on every delivery."""
    return EmailChannel(raise_errors=True)


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def registry(data_store: DataStore) -> EndpointRegistry:
    return EndpointRegistry(data_store)


@pytest.fixture
def bus(registry: EndpointRegistry, data_store: DataStore) -> LiveFanoutBus:
    return LiveFanoutBus(registry, data_store, snapshot_limit=100)


@pytest.fixture
def router(data_store: DataStore, email_channel: EmailChannel) -> NotificationRouter:
    return NotificationRouter(data_store, email_channel, public_base_url="https://catch.test")


@pytest.fixture
def preferences(data_store: DataStore) -> NotificationPreferences:
    return NotificationPreferences(data_store)


@pytest.fixture
def pipeline(
    registry: EndpointRegistry,
    data_store: DataStore,
    bus: LiveFanoutBus,
    router: NotificationRouter,
) -> IngestionPipeline:
    return IngestionPipeline(registry, data_store, bus, router)


@pytest_asyncio.fixture
async def endpoint(registry: EndpointRegistry):
    """An endpoint owned by Alice's email."""
    return await registry.create(name="stripe", owner_key="alice@example.com")


@pytest.fixture
def make_subscriber():
    """Factory for (subscriber, sink) pairs."""
    def _make():
        sink = RecordingSink()
        return Subscriber(sink), sink
    return _make


# =============================================================================
# Principal Fixtures
# =============================================================================

@pytest.fixture
def alice() -> Principal:
    """Alice has both a subject id and an email."""
    return Principal(subject_id="auth0|alice", email="alice@example.com")


@pytest.fixture
def bob() -> Principal:
    return Principal(subject_id="auth0|bob", email="bob@example.com")
