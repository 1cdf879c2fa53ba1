"""
Notification transport for the request catcher.

The router treats transport as an external collaborator with one operation:
`deliver(address, message) -> NotificationResult`. This module ships the
logging email channel used in development and tests. A real deployment would
swap in something backed by SendGrid, SES, Mailgun and the like, exposing
the same coroutine.

Design decisions:
- Every send is logged so captured requests are visible on the console
- The channel records what it sent, so tests can assert on it
- Failures can be simulated with a fail rate, or by raising outright
- Delivery is async because real transports do network I/O
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from capture.errors import TransportFailure
from capture.models import utcnow

logger = logging.getLogger("notifications")


@dataclass
class NotificationMessage:
    """Content handed to the transport: rendered text plus the raw payload."""
    subject: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationResult:
    """
    Result of a delivery attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    recipient: str
    subject: str
    body: str
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"{status} EMAIL to {self.recipient}: {self.subject}"


class Transport(Protocol):
    async def deliver(self, address: str, message: NotificationMessage) -> NotificationResult:
        ...


class EmailChannel:
    """
    Logging email channel.

    Logs email sends and tracks them for test assertions. Can simulate
    soft failures (fail_rate) or hard failures (raise_errors) for testing
    error handling.
    """

    def __init__(
        self,
        fail_rate: float = 0.0,
        raise_errors: bool = False,
        from_addr: str = "notifications@request-catcher.local",
    ):
        """
        Args:
            fail_rate: Probability of a failed send (0.0 to 1.0).
            raise_errors: Raise TransportFailure instead of returning a result.
            from_addr: Sender address (for logging).
        """
        self.fail_rate = fail_rate
        self.raise_errors = raise_errors
        self.from_addr = from_addr
        self.sent_messages: list[NotificationResult] = []

    async def deliver(self, address: str, message: NotificationMessage) -> NotificationResult:
        if self.raise_errors:
            logger.error(f"[EMAIL FAILED] To: {address} | Subject: {message.subject}")
            raise TransportFailure(f"Could not deliver email to {address}")

        if random.random() < self.fail_rate:
            result = NotificationResult(
                success=False,
                recipient=address,
                subject=message.subject,
                body=message.body,
                error="Simulated email delivery failure",
            )
            logger.error(f"[EMAIL FAILED] To: {address} | Subject: {message.subject} | Error: {result.error}")
        else:
            result = NotificationResult(
                success=True,
                recipient=address,
                subject=message.subject,
                body=message.body,
            )
            logger.info(f"[EMAIL] From: {self.from_addr} | To: {address} | Subject: {message.subject}")
            logger.debug(f"[EMAIL BODY] {message.body}")

        self.sent_messages.append(result)
        return result

    def get_sent_count(self) -> int:
        return len(self.sent_messages)

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find a message sent to a specific recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient:
                return msg
        return None
