"""
Live fan-out bus for captured requests.

This module keeps track of who is watching which endpoint and pushes newly
captured requests to them as they arrive. Each endpoint has a "room": the set
of subscribers currently joined to it. New subscribers get a catch-up
snapshot of recent history, then live `new_request` events.

Design decisions:
- One bus instance per process, constructed once and passed by reference to
  the ingestion pipeline and the connection handlers (no module globals)
- Room mutation and broadcast fan-out never await, so on the single event
  loop no delivery ever sees a half-added or half-removed room
- Each subscriber owns one FIFO outbound queue drained by one writer task;
  network writes never block ingestion and events for a subscriber arrive
  in the order they were enqueued
- No durable per-subscriber queue: a disconnected viewer relies entirely on
  the catch-up snapshot at its next join

Join boundary (snapshot vs. live):
    The subscription is added to the room *before* the snapshot is read, in
    a pending state that buffers live records. Once the snapshot has been
    queued, the subscription's watermark is the highest sequence in it, and
    buffered and later records are only forwarded when their sequence is
    above the watermark. A record racing the snapshot read therefore shows
    up exactly once: in the snapshot, or live, never both and never neither.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from capture.config import MAX_SNAPSHOT_LIMIT
from capture.data_store import DataStore
from capture.errors import EndpointNotFound
from capture.models import CapturedRequest
from fanout.registry import EndpointRegistry

logger = logging.getLogger("event_bus")

# Event names on the wire
EVENT_ERROR = "error"
EVENT_INIT_REQUESTS = "init_requests"
EVENT_NEW_REQUEST = "new_request"
EVENT_ENDPOINT_DELETED = "endpoint_deleted"

SendFunc = Callable[[dict[str, Any]], Awaitable[None]]


class Subscriber:
    """
    One live viewer connection.

    Wraps a send coroutine (e.g. `websocket.send_json`) with an outbound
    queue and a writer task. If a send fails the subscriber closes itself
    and reports the failure through `on_failure`.
    """

    def __init__(self, send: SendFunc, subscriber_id: Optional[str] = None):
        self.id = subscriber_id or uuid4().hex[:12]
        self._send = send
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self.closed = False
        self.on_failure: Optional[Callable[["Subscriber"], Any]] = None

    def __repr__(self) -> str:
        return f"Subscriber({self.id})"

    def emit(self, event: str, data: Any) -> None:
        """Queue an event for delivery. Never blocks."""
        if self.closed:
            return
        self._queue.put_nowait({"event": event, "data": data})
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def _write_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._send(message)
            except Exception as e:
                logger.warning(f"{self} send failed, dropping subscriber: {e}")
                self.closed = True
                self._discard_pending()
                if self.on_failure is not None:
                    self.on_failure(self)
                return
            finally:
                self._queue.task_done()

    def _discard_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def flush(self) -> None:
        """Wait until everything queued so far has been sent (or dropped)."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop the writer; anything still queued is discarded."""
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._discard_pending()


class Subscription:
    """
    A subscriber's membership in one endpoint's room.

    Holds the join-boundary state: pending flag, buffer, and the sequence
    watermark used to drop records already covered by the snapshot.
    """

    def __init__(self, subscriber: Subscriber, endpoint_id: str):
        self.subscriber = subscriber
        self.endpoint_id = endpoint_id
        self.pending = True
        self.watermark = 0
        self._buffer: list[CapturedRequest] = []

    def offer(self, record: CapturedRequest) -> None:
        """Hand a live record to this subscription."""
        if self.pending:
            self._buffer.append(record)
            return
        self._forward(record)

    def activate(self, snapshot: list[CapturedRequest]) -> None:
        """
        Deliver the catch-up snapshot (oldest first) and go live.

        Buffered records already in the snapshot are dropped by sequence.
        """
        self.subscriber.emit(EVENT_INIT_REQUESTS, [r.to_event() for r in snapshot])
        if snapshot:
            self.watermark = max(self.watermark, snapshot[-1].sequence)
        self.pending = False
        buffered, self._buffer = self._buffer, []
        for record in buffered:
            self._forward(record)

    def _forward(self, record: CapturedRequest) -> None:
        if record.sequence <= self.watermark:
            logger.debug(
                f"{self.subscriber} already has {self.endpoint_id}#{record.sequence}, skipping"
            )
            return
        self.watermark = record.sequence
        self.subscriber.emit(EVENT_NEW_REQUEST, record.to_event())


class LiveFanoutBus:
    """
    Per-endpoint rooms of live subscribers.

    Example usage:
        bus = LiveFanoutBus(registry, data_store)

        subscriber = Subscriber(websocket.send_json)
        await bus.join(subscriber, endpoint_id)   # -> init_requests

        bus.broadcast(endpoint_id, record)        # -> new_request
        bus.disconnect(subscriber)
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        data_store: DataStore,
        snapshot_limit: int = 100,
    ):
        self.registry = registry
        self.data_store = data_store
        self.snapshot_limit = min(snapshot_limit, MAX_SNAPSHOT_LIMIT)

        # endpoint_id -> {subscriber: subscription}
        self._rooms: dict[str, dict[Subscriber, Subscription]] = defaultdict(dict)

    async def join(self, subscriber: Subscriber, endpoint_id: str) -> list[CapturedRequest]:
        """
        Add a subscriber to an endpoint's room and send the catch-up snapshot.

        Joining a room the subscriber is already in starts over with a fresh
        snapshot.

        Returns:
            The snapshot, oldest first.

        Raises:
            EndpointNotFound: The subscriber is sent an error event and is
                not added to the room.
        """
        if not await self.registry.exists(endpoint_id):
            subscriber.emit(EVENT_ERROR, "Endpoint not found")
            raise EndpointNotFound(endpoint_id)

        if subscriber.on_failure is None:
            subscriber.on_failure = self.disconnect

        # Membership first, then the read: see the module docstring
        subscription = Subscription(subscriber, endpoint_id)
        self._rooms[endpoint_id][subscriber] = subscription

        try:
            newest_first = await self.data_store.recent_requests(endpoint_id, self.snapshot_limit)
        except Exception:
            self._remove(endpoint_id, subscriber, subscription)
            raise

        snapshot = list(reversed(newest_first))
        if self._rooms.get(endpoint_id, {}).get(subscriber) is subscription:
            subscription.activate(snapshot)
            logger.info(
                f"{subscriber} joined {endpoint_id} "
                f"(snapshot={len(snapshot)}, room={self.room_size(endpoint_id)})"
            )
        return snapshot

    def broadcast(self, endpoint_id: str, record: CapturedRequest) -> int:
        """
        Deliver a newly captured request to everyone in the endpoint's room.

        Returns:
            Number of subscriptions the record was offered to.

        Note: One subscription misbehaving doesn't stop the others.
        """
        room = self._rooms.get(endpoint_id)
        if not room:
            return 0

        members = list(room.values())
        for subscription in members:
            try:
                subscription.offer(record)
            except Exception as e:
                logger.error(f"Broadcast of {endpoint_id}#{record.sequence} to {subscription.subscriber} failed: {e}")
        return len(members)

    def leave(self, subscriber: Subscriber, endpoint_id: str) -> bool:
        """Remove one membership. Returns False if it didn't exist."""
        subscription = self._rooms.get(endpoint_id, {}).get(subscriber)
        if subscription is None:
            return False
        self._remove(endpoint_id, subscriber, subscription)
        return True

    def disconnect(self, subscriber: Subscriber) -> int:
        """Remove a subscriber from every room. Returns how many it left."""
        left = 0
        for endpoint_id in self.rooms_for(subscriber):
            if self.leave(subscriber, endpoint_id):
                left += 1
        if left:
            logger.info(f"{subscriber} disconnected from {left} room(s)")
        return left

    def close_room(self, endpoint_id: str) -> int:
        """Tell everyone in a deleted endpoint's room and empty it."""
        room = self._rooms.pop(endpoint_id, {})
        for subscriber in room:
            subscriber.emit(EVENT_ENDPOINT_DELETED, endpoint_id)
        return len(room)

    def _remove(self, endpoint_id: str, subscriber: Subscriber, subscription: Subscription) -> None:
        room = self._rooms.get(endpoint_id)
        if room is None or room.get(subscriber) is not subscription:
            return
        del room[subscriber]
        if not room:
            del self._rooms[endpoint_id]

    def room_size(self, endpoint_id: str) -> int:
        return len(self._rooms.get(endpoint_id, {}))

    def rooms_for(self, subscriber: Subscriber) -> list[str]:
        return [eid for eid, room in self._rooms.items() if subscriber in room]
