"""
Ingestion pipeline for inbound requests.

Takes one arriving request, checks the endpoint exists, normalizes it,
appends it to the store, and hands the stored record on:

    ingest -> store.append -> bus.broadcast            (ordered, never awaited on I/O)
                           -> router.route             (background task, best-effort)

Design decisions:
- Receipt is decoupled from delivery: once the append succeeds the caller
  gets its record back, whatever happens to broadcast or notification
- A per-endpoint lock spans append + broadcast hand-off, so broadcasts are
  issued in exactly the order the store assigned sequences
- Notification routing runs as a tracked background task so it can take as
  long as the transport likes without touching ingestion latency
- The existence check and the append are not atomic with a concurrent
  delete; the store refuses appends for a deleted endpoint, and a record
  appended a moment before deletion is simply purged with it
"""

import asyncio
import base64
import json
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any, Coroutine, Optional, Union
from urllib.parse import parse_qsl

from capture.data_store import DataStore
from capture.errors import EndpointNotFound, InvalidRequest, StorageFailure
from capture.models import CapturedRequest, Pairs, RequestDraft
from fanout.event_bus import LiveFanoutBus
from fanout.notification_router import NotificationRouter
from fanout.registry import EndpointRegistry

logger = logging.getLogger("ingestion")

# RFC 9110 token characters
_METHOD_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

PairsInput = Union[Mapping[str, Any], Iterable[tuple[str, Any]], None]


# =============================================================================
# Normalization
# =============================================================================

def normalize_method(method: str) -> str:
    """Canonical upper-case method token."""
    canonical = (method or "").strip().upper()
    if not _METHOD_TOKEN.match(canonical):
        raise InvalidRequest(f"Invalid HTTP method: {method!r}")
    return canonical


def normalize_pairs(items: PairsInput) -> Pairs:
    """
    Turn headers or query params into an ordered list of (name, value) pairs.

    Accepts a pair iterable (kept as is, duplicates and all) or a mapping,
    where list values expand into repeated pairs.
    """
    if not items:
        return []
    if isinstance(items, Mapping):
        pairs: Pairs = []
        for name, value in items.items():
            if isinstance(value, (list, tuple)):
                pairs.extend((str(name), str(v)) for v in value)
            else:
                pairs.append((str(name), str(value)))
        return pairs
    return [(str(name), str(value)) for name, value in items]


def _content_type(headers: Pairs) -> Optional[str]:
    for name, value in headers:
        if name.lower() == "content-type":
            return value
    return None


def normalize_body(raw: Any, content_type: Optional[str] = None) -> tuple[Any, Optional[str]]:
    """
    Normalize a body into (value, encoding).

    JSON bodies are parsed, form bodies become ordered pairs, text stays a
    string, and anything that isn't UTF-8 is base64-encoded with encoding
    "base64". Already-structured values pass through untouched. Nothing is
    validated against a schema.
    """
    if raw is None or raw == b"" or raw == "":
        return None, None
    if not isinstance(raw, (bytes, bytearray, str)):
        return raw, None

    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(bytes(raw)).decode("ascii"), "base64"
    else:
        text = raw

    mime = (content_type or "").split(";")[0].strip().lower()
    if mime == "application/json" or mime.endswith("+json"):
        try:
            return json.loads(text), None
        except (ValueError, RecursionError):
            # Malformed or too deeply nested: keep what was sent
            return text, None
    if mime == "application/x-www-form-urlencoded":
        return [[k, v] for k, v in parse_qsl(text, keep_blank_values=True)], None
    return text, None


# =============================================================================
# Pipeline
# =============================================================================

class IngestionPipeline:
    """
    Validates, persists and dispatches inbound requests.

    Example:
        pipeline = IngestionPipeline(registry, data_store, bus, router)
        record = await pipeline.ingest(endpoint_id, "POST", headers, query, body)
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        data_store: DataStore,
        bus: LiveFanoutBus,
        router: NotificationRouter,
    ):
        self.registry = registry
        self.data_store = data_store
        self.bus = bus
        self.router = router

        self._locks: dict[str, asyncio.Lock] = {}
        # Strong refs so scheduled tasks aren't garbage collected mid-flight
        self._background: set[asyncio.Task] = set()

    def _lock_for(self, endpoint_id: str) -> asyncio.Lock:
        lock = self._locks.get(endpoint_id)
        if lock is None:
            lock = self._locks[endpoint_id] = asyncio.Lock()
        return lock

    async def ingest(
        self,
        endpoint_id: str,
        method: str,
        headers: PairsInput = None,
        query: PairsInput = None,
        body: Any = None,
    ) -> CapturedRequest:
        """
        Capture one inbound request.

        Raises:
            EndpointNotFound: Unknown endpoint; nothing is appended.
            InvalidRequest: The method isn't a valid token.
            StorageFailure: The append itself failed.
        """
        endpoint = await self.registry.get(endpoint_id)

        header_pairs = normalize_pairs(headers)
        value, encoding = normalize_body(body, _content_type(header_pairs))
        draft = RequestDraft(
            method=normalize_method(method),
            headers=header_pairs,
            query=normalize_pairs(query),
            body=value,
            body_encoding=encoding,
        )

        async with self._lock_for(endpoint_id):
            try:
                record = await self.data_store.append_request(endpoint_id, draft)
            except (EndpointNotFound, StorageFailure):
                raise
            except Exception as e:
                raise StorageFailure(f"Append to {endpoint_id} failed: {e}") from e
            self._broadcast(record)

        logger.info(f"Captured {record.method} {endpoint_id}#{record.sequence}")

        self._spawn(
            self.router.route(endpoint.owner_key, endpoint, record),
            name=f"notify-{endpoint_id}-{record.sequence}",
        )
        return record

    def _broadcast(self, record: CapturedRequest) -> None:
        try:
            delivered = self.bus.broadcast(record.endpoint_id, record)
            logger.debug(f"Broadcast {record.endpoint_id}#{record.sequence} to {delivered} subscriber(s)")
        except Exception as e:
            logger.error(f"Broadcast of {record.endpoint_id}#{record.sequence} failed: {e}")

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task {task.get_name()} failed: {task.exception()}")

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def forget(self, endpoint_id: str) -> None:
        """Drop per-endpoint state after the endpoint is deleted."""
        lock = self._locks.get(endpoint_id)
        if lock is not None and not lock.locked():
            del self._locks[endpoint_id]
