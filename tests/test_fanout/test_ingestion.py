"""
Tests for the ingestion pipeline.

Covers the precondition check, normalization, sequencing under concurrency,
and the guarantee that broadcast and notification failures never fail a
successful capture.
"""

import asyncio
import base64

import pytest

from capture.channels import EmailChannel
from capture.data_store import DataStore
from capture.errors import EndpointNotFound, InvalidRequest, StorageFailure
from fanout.event_bus import LiveFanoutBus
from fanout.ingestion import (
    IngestionPipeline,
    normalize_body,
    normalize_method,
    normalize_pairs,
)
from fanout.notification_router import NotificationRouter
from fanout.registry import EndpointRegistry


class TestNormalization:

    def test_method_is_upper_cased(self):
        assert normalize_method(" post ") == "POST"
        assert normalize_method("purge") == "PURGE"

    def test_invalid_method(self):
        with pytest.raises(InvalidRequest):
            normalize_method("GET /")
        with pytest.raises(InvalidRequest):
            normalize_method("")

    def test_pairs_keep_duplicates_and_order(self):
        pairs = normalize_pairs([("x-b", "1"), ("x-a", "2"), ("x-b", "3")])
        assert pairs == [("x-b", "1"), ("x-a", "2"), ("x-b", "3")]

    def test_pairs_from_mapping_expand_lists(self):
        assert normalize_pairs({"tag": ["a", "b"], "page": 2}) == [
            ("tag", "a"), ("tag", "b"), ("page", "2"),
        ]
        assert normalize_pairs(None) == []

    def test_json_body(self):
        assert normalize_body(b'{"a": [1, 2]}', "application/json; charset=utf-8") == ({"a": [1, 2]}, None)
        assert normalize_body(b'{"a": 1}', "application/vnd.api+json") == ({"a": 1}, None)

    def test_invalid_json_body_kept_as_text(self):
        assert normalize_body(b"{not json", "application/json") == ("{not json", None)

    def test_deeply_nested_json_kept_as_text(self):
        raw = "[" * 100000 + "]" * 100000
        assert normalize_body(raw.encode(), "application/json") == (raw, None)

    def test_form_body(self):
        body, encoding = normalize_body(b"a=1&b=&a=2", "application/x-www-form-urlencoded")
        assert body == [["a", "1"], ["b", ""], ["a", "2"]]
        assert encoding is None

    def test_text_body(self):
        assert normalize_body(b"hello", "text/plain") == ("hello", None)
        assert normalize_body(b"hello", None) == ("hello", None)

    def test_binary_body(self):
        raw = b"\xff\xd8\xff\xe0"
        assert normalize_body(raw, "image/jpeg") == (base64.b64encode(raw).decode(), "base64")

    def test_empty_and_structured_bodies(self):
        assert normalize_body(b"", "application/json") == (None, None)
        assert normalize_body(None) == (None, None)
        assert normalize_body({"already": "parsed"}) == ({"already": "parsed"}, None)


class TestIngest:

    @pytest.mark.asyncio
    async def test_ingest(self, pipeline: IngestionPipeline, endpoint):
        record = await pipeline.ingest(
            endpoint.id,
            "post",
            headers=[("content-type", "application/json"), ("x-sig", "a"), ("x-sig", "b")],
            query=[("q", "1")],
            body=b'{"ok": true}',
        )

        assert record.endpoint_id == endpoint.id
        assert record.sequence == 1
        assert record.method == "POST"
        assert record.headers == [("content-type", "application/json"), ("x-sig", "a"), ("x-sig", "b")]
        assert record.query == [("q", "1")]
        assert record.body == {"ok": True}

    @pytest.mark.asyncio
    async def test_unknown_endpoint_never_appends(self, pipeline: IngestionPipeline, data_store: DataStore):
        with pytest.raises(EndpointNotFound):
            await pipeline.ingest("nonexistent", "POST", body=b"x")
        assert await data_store.count_requests("nonexistent") == 0

    @pytest.mark.asyncio
    async def test_invalid_method_never_appends(self, pipeline, data_store, endpoint):
        with pytest.raises(InvalidRequest):
            await pipeline.ingest(endpoint.id, "BAD METHOD")
        assert await data_store.count_requests(endpoint.id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_ingests_strictly_increase(self, pipeline, bus, endpoint, make_subscriber):
        subscriber, sink = make_subscriber()
        await bus.join(subscriber, endpoint.id)

        records = await asyncio.gather(
            *(pipeline.ingest(endpoint.id, "POST", body=str(n).encode()) for n in range(40))
        )
        await subscriber.flush()

        assert sorted(r.sequence for r in records) == list(range(1, 41))
        assert sink.live_sequences() == list(range(1, 41))

    @pytest.mark.asyncio
    async def test_subscriber_sees_subsequent_requests_once(self, pipeline, bus, endpoint, make_subscriber):
        await pipeline.ingest(endpoint.id, "GET")
        subscriber, sink = make_subscriber()
        await bus.join(subscriber, endpoint.id)

        for _ in range(3):
            await pipeline.ingest(endpoint.id, "POST")
        await subscriber.flush()

        assert sink.snapshot_sequences() == [1]
        assert sink.live_sequences() == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, pipeline, data_store, endpoint, monkeypatch):
        async def broken_append(endpoint_id, draft):
            raise RuntimeError("disk full")

        monkeypatch.setattr(data_store, "append_request", broken_append)

        with pytest.raises(StorageFailure):
            await pipeline.ingest(endpoint.id, "POST")

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_isolated(self, pipeline, bus, data_store, endpoint, monkeypatch):
        def broken_broadcast(endpoint_id, record):
            raise RuntimeError("bus down")

        monkeypatch.setattr(bus, "broadcast", broken_broadcast)

        record = await pipeline.ingest(endpoint.id, "POST")

        assert record.sequence == 1
        assert await data_store.count_requests(endpoint.id) == 1

    @pytest.mark.asyncio
    async def test_deleted_endpoint_requests_are_purged(self, pipeline, registry, data_store, endpoint):
        await pipeline.ingest(endpoint.id, "POST")
        await registry.delete(endpoint.id)

        assert await data_store.count_requests(endpoint.id) == 0
        with pytest.raises(EndpointNotFound):
            await pipeline.ingest(endpoint.id, "POST")


class TestIngestNotifications:

    @pytest.mark.asyncio
    async def test_notification_sent_in_background(self, pipeline, data_store, email_channel, endpoint):
        await data_store.upsert_setting(
            "alice@example.com", enabled=True, notification_email="alice@work.com"
        )

        await pipeline.ingest(endpoint.id, "POST", body=b"hi")
        await pipeline.drain()

        assert email_channel.find_message_to("alice@work.com") is not None
        assert pipeline.pending_tasks == 0

    @pytest.mark.asyncio
    async def test_transport_failure_never_fails_ingest(self, data_store, raising_channel):
        registry = EndpointRegistry(data_store)
        bus = LiveFanoutBus(registry, data_store)
        router = NotificationRouter(data_store, raising_channel)
        pipeline = IngestionPipeline(registry, data_store, bus, router)
        endpoint = await registry.create(owner_key="alice@example.com")
        await data_store.upsert_setting("alice@example.com", enabled=True, notification_email="alice@work.com")

        record = await pipeline.ingest(endpoint.id, "POST")
        await pipeline.drain()

        assert record.sequence == 1

    @pytest.mark.asyncio
    async def test_slow_transport_does_not_delay_ingest(self, data_store):
        release = asyncio.Event()

        class SlowChannel(EmailChannel):
            async def deliver(self, address, message):
                await release.wait()
                return await super().deliver(address, message)

        channel = SlowChannel()
        registry = EndpointRegistry(data_store)
        bus = LiveFanoutBus(registry, data_store)
        pipeline = IngestionPipeline(registry, data_store, bus, NotificationRouter(data_store, channel))
        endpoint = await registry.create(owner_key="alice@example.com")
        await data_store.upsert_setting("alice@example.com", enabled=True, notification_email="alice@work.com")

        await asyncio.wait_for(pipeline.ingest(endpoint.id, "POST"), timeout=1)
        assert channel.get_sent_count() == 0

        release.set()
        await pipeline.drain()
        assert channel.get_sent_count() == 1
