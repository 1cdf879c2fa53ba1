"""
Notification message template.

There is exactly one notification type - "a request arrived at your
endpoint" - so this module holds a single plain-text template rather than
a registry. Variable substitution uses Python's string formatting.
"""

import json
from dataclasses import dataclass
from typing import Any

from capture.channels import NotificationMessage
from capture.models import CapturedRequest, Endpoint


@dataclass
class NotificationTemplate:
    """An email subject/body pair with {variable} placeholders."""
    email_subject: str
    email_body: str

    def render_email(self, **kwargs) -> tuple[str, str]:
        """
        Render the email template with provided variables.

        Returns:
            Tuple of (subject, body)
        """
        return (
            self.email_subject.format(**kwargs),
            self.email_body.format(**kwargs),
        )


REQUEST_RECEIVED = NotificationTemplate(
    email_subject="New {method} request on {endpoint_name}",
    email_body="""A new request was captured on {endpoint_name}.

Endpoint: {endpoint_url}
Method: {method}
Content-Type: {content_type}
Received: {timestamp}

Headers:
{headers}

Query:
{query}

Body:
{body}
""",
)


def format_pairs(pairs: list[tuple[str, str]]) -> str:
    """Render an ordered multimap one pair per line."""
    if not pairs:
        return "  (none)"
    return "\n".join(f"  {name}: {value}" for name, value in pairs)


def format_body(body: Any) -> str:
    # Bodies are untrusted; only ever rendered as inert text
    if body is None:
        return "  (empty)"
    if isinstance(body, str):
        return body
    return json.dumps(body, indent=2, default=str)


def build_payload(endpoint: Endpoint, record: CapturedRequest, endpoint_url: str) -> dict[str, Any]:
    """Structured notification payload; also the template's variables."""
    return {
        "endpoint_id": endpoint.id,
        "endpoint_name": endpoint.display_name,
        "endpoint_url": endpoint_url,
        "sequence": record.sequence,
        "method": record.method,
        "content_type": record.header("content-type"),
        "headers": [list(pair) for pair in record.headers],
        "query": [list(pair) for pair in record.query],
        "body": record.body,
        "timestamp": record.timestamp.isoformat(),
    }


def render_request_notification(
    endpoint: Endpoint,
    record: CapturedRequest,
    endpoint_url: str,
) -> NotificationMessage:
    payload = build_payload(endpoint, record, endpoint_url)
    subject, body = REQUEST_RECEIVED.render_email(
        endpoint_name=payload["endpoint_name"],
        endpoint_url=endpoint_url,
        method=record.method,
        content_type=payload["content_type"] or "(none)",
        timestamp=payload["timestamp"],
        headers=format_pairs(record.headers),
        query=format_pairs(record.query),
        body=format_body(record.body),
    )
    return NotificationMessage(subject=subject, body=body, payload=payload)
