"""
Tests for the request notification template.
"""

from capture.models import CapturedRequest, Endpoint
from capture.templates import format_body, format_pairs, render_request_notification


def make_record(**overrides) -> CapturedRequest:
    fields = dict(
        endpoint_id="ep-1",
        sequence=3,
        method="POST",
        headers=[("content-type", "application/json")],
        query=[("a", "1"), ("a", "2")],
        body={"event": "charge.succeeded"},
    )
    fields.update(overrides)
    return CapturedRequest(**fields)


class TestRenderRequestNotification:

    def test_subject_uses_display_name(self):
        endpoint = Endpoint(id="ep-1", name="Stripe")
        message = render_request_notification(endpoint, make_record(), "https://catch.test/ep-1")

        assert message.subject == "New POST request on Stripe"

    def test_subject_falls_back_to_id(self):
        endpoint = Endpoint(id="ep-1")
        message = render_request_notification(endpoint, make_record(), "https://catch.test/ep-1")

        assert message.subject == "New POST request on ep-1"

    def test_body_lists_request_details(self):
        endpoint = Endpoint(id="ep-1")
        message = render_request_notification(endpoint, make_record(), "https://catch.test/ep-1")

        assert "https://catch.test/ep-1" in message.body
        assert "  a: 1\n  a: 2" in message.body
        assert '"event": "charge.succeeded"' in message.body

    def test_content_type_line(self):
        endpoint = Endpoint(id="ep-1")

        typed = render_request_notification(
            endpoint, make_record(headers=[("Content-Type", "text/plain")]), "https://catch.test/ep-1"
        )
        untyped = render_request_notification(endpoint, make_record(headers=[]), "https://catch.test/ep-1")

        assert "Content-Type: text/plain" in typed.body
        assert "Content-Type: (none)" in untyped.body
        assert untyped.payload["content_type"] is None

    def test_payload(self):
        endpoint = Endpoint(id="ep-1", name="Stripe")
        record = make_record()
        message = render_request_notification(endpoint, record, "https://catch.test/ep-1")

        assert message.payload["endpoint_name"] == "Stripe"
        assert message.payload["endpoint_url"] == "https://catch.test/ep-1"
        assert message.payload["method"] == "POST"
        assert message.payload["content_type"] == "application/json"
        assert message.payload["query"] == [["a", "1"], ["a", "2"]]
        assert message.payload["body"] == {"event": "charge.succeeded"}
        assert message.payload["timestamp"] == record.timestamp.isoformat()


def test_format_helpers():
    assert format_pairs([]) == "  (none)"
    assert format_body(None) == "  (empty)"
    assert format_body("<script>alert(1)</script>") == "<script>alert(1)</script>"
