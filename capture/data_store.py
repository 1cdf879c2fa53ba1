"""
In-memory data store for the request catcher.

This module provides the storage layer behind the registry, the ingestion
pipeline, and the notification router. In production this would be a real
database; the contract the rest of the code relies on is small:

- Endpoints keyed by id
- Captured requests keyed by (endpoint_id, sequence), readable newest-first
- Notification settings keyed by identity key

Design decisions:
- Sequence assignment is serialized per endpoint with an asyncio.Lock, so
  concurrent appends on one endpoint can't produce duplicate or out-of-order
  sequences, while appends on different endpoints never wait on each other
- Appends re-check that the endpoint exists while holding its lock, and
  deletes take the same lock, so no request can survive its endpoint
- Optional JSON fixtures (endpoints.json, notification_settings.json) are
  loaded lazily from data_dir, which is handy for demos and tests
- Every method is async so callers already treat storage as a suspend point
"""

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Optional

from capture.errors import EndpointNotFound
from capture.models import (
    CapturedRequest,
    Endpoint,
    NotificationSetting,
    RequestDraft,
    utcnow,
)

logger = logging.getLogger("data_store")


class DataStore:
    """
    Central store for endpoints, captured requests and notification settings.

    Example usage:
        store = DataStore()
        await store.add_endpoint(Endpoint(name="stripe"))
        record = await store.append_request(endpoint.id, draft)
        latest = await store.recent_requests(endpoint.id, limit=100)
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Initialize the data store.

        Args:
            data_dir: Optional directory holding JSON fixtures to seed from.
        """
        self.data_dir = Path(data_dir) if data_dir is not None else None

        # Loaded lazily so fixtures are only read when first needed
        self._endpoints: Optional[dict[str, Endpoint]] = None
        self._settings: Optional[dict[str, NotificationSetting]] = None

        # endpoint_id -> requests in ascending sequence order
        self._requests: dict[str, list[CapturedRequest]] = defaultdict(list)
        self._sequences: dict[str, int] = defaultdict(int)
        self._locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self, filename: str) -> list[dict]:
        """Load a JSON fixture file, or nothing when there is no data_dir."""
        if self.data_dir is None:
            return []
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        with open(filepath, "r") as f:
            return json.load(f)

    def _ensure_endpoints_loaded(self):
        if self._endpoints is None:
            data = self._load_json("endpoints.json")
            self._endpoints = {e["id"]: Endpoint(**e) for e in data}
            if data:
                logger.info(f"Loaded {len(data)} endpoints from fixtures")

    def _ensure_settings_loaded(self):
        if self._settings is None:
            data = self._load_json("notification_settings.json")
            self._settings = {s["identity_key"]: NotificationSetting(**s) for s in data}

    def _lock_for(self, endpoint_id: str) -> asyncio.Lock:
        lock = self._locks.get(endpoint_id)
        if lock is None:
            lock = self._locks[endpoint_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Endpoint Operations
    # =========================================================================

    async def add_endpoint(self, endpoint: Endpoint) -> Endpoint:
        self._ensure_endpoints_loaded()
        if endpoint.id in self._endpoints:
            raise ValueError(f"Endpoint already exists: {endpoint.id}")
        self._endpoints[endpoint.id] = endpoint
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        self._ensure_endpoints_loaded()
        return self._endpoints.get(endpoint_id)

    async def list_endpoints(self, owner_key: Optional[str] = None) -> list[Endpoint]:
        """All endpoints, or only those owned by `owner_key`, oldest first."""
        self._ensure_endpoints_loaded()
        endpoints = [
            e for e in self._endpoints.values()
            if owner_key is None or e.owner_key == owner_key
        ]
        return sorted(endpoints, key=lambda e: e.created_at)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """
        Delete an endpoint and purge every request logged against it.

        Returns True if the endpoint existed.
        """
        self._ensure_endpoints_loaded()
        async with self._lock_for(endpoint_id):
            existed = self._endpoints.pop(endpoint_id, None) is not None
            purged = len(self._requests.pop(endpoint_id, []))
            self._sequences.pop(endpoint_id, None)
        self._locks.pop(endpoint_id, None)
        if existed:
            logger.info(f"Deleted endpoint {endpoint_id} ({purged} requests purged)")
        return existed

    # =========================================================================
    # Captured Request Operations
    # =========================================================================

    async def append_request(self, endpoint_id: str, draft: RequestDraft) -> CapturedRequest:
        """
        Append a request to an endpoint's log and assign its sequence.

        Linearizable per endpoint: the returned sequence is strictly greater
        than any sequence previously assigned for this endpoint.

        Raises:
            EndpointNotFound: If the endpoint is gone by the time the lock is held.
        """
        self._ensure_endpoints_loaded()
        async with self._lock_for(endpoint_id):
            if endpoint_id not in self._endpoints:
                raise EndpointNotFound(endpoint_id)
            self._sequences[endpoint_id] += 1
            record = CapturedRequest.from_draft(
                endpoint_id, self._sequences[endpoint_id], draft
            )
            self._requests[endpoint_id].append(record)
        return record

    async def recent_requests(self, endpoint_id: str, limit: int = 100) -> list[CapturedRequest]:
        """Most recent requests for an endpoint, newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._requests.get(endpoint_id, [])[-limit:]))

    async def count_requests(self, endpoint_id: str) -> int:
        return len(self._requests.get(endpoint_id, []))

    # =========================================================================
    # Notification Setting Operations
    # =========================================================================

    async def get_setting(self, identity_key: str) -> Optional[NotificationSetting]:
        self._ensure_settings_loaded()
        return self._settings.get(identity_key)

    async def find_settings_by_email(self, notification_email: str) -> list[NotificationSetting]:
        """Settings whose delivery address matches, most recently updated first."""
        self._ensure_settings_loaded()
        matches = [
            s for s in self._settings.values()
            if s.notification_email == notification_email
        ]
        return sorted(matches, key=lambda s: s.updated_at, reverse=True)

    async def upsert_setting(
        self,
        identity_key: str,
        enabled: Optional[bool] = None,
        notification_email: Optional[str] = None,
    ) -> NotificationSetting:
        """
        Create or update the setting for an identity key.

        Fields passed as None keep their current value. Idempotent.
        """
        self._ensure_settings_loaded()
        current = self._settings.get(identity_key)
        updated = NotificationSetting(
            identity_key=identity_key,
            enabled=enabled if enabled is not None else (current.enabled if current else False),
            notification_email=(
                notification_email if notification_email is not None
                else (current.notification_email if current else None)
            ),
            updated_at=utcnow(),
        )
        self._settings[identity_key] = updated
        return updated

    async def delete_settings(self, identity_keys: list[str]) -> int:
        """Remove settings rows; returns how many existed."""
        self._ensure_settings_loaded()
        removed = 0
        for key in identity_keys:
            if self._settings.pop(key, None) is not None:
                removed += 1
        return removed

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def reload(self):
        """
        Drop everything and re-read fixtures on next access.

        Useful for tests that rewrite fixture files.
        """
        self._endpoints = None
        self._settings = None
        self._requests.clear()
        self._sequences.clear()
        self._locks.clear()
