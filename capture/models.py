"""
Domain models for the request catcher.

These models describe the three records the system persists:
- Endpoint: a capture target that inbound requests are recorded against
- CapturedRequest: one immutable, sequenced record of an inbound request
- NotificationSetting: notification preferences keyed by an identity key

Design decisions:
- Using Pydantic for validation and serialization
- CapturedRequest is frozen - once the store assigns a sequence it never changes
- Headers and query strings are ordered pair lists, not dicts, so duplicate
  keys and the original order survive the round trip to viewers
- Bodies are opaque JSON-compatible values; nothing here interprets them
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time, used for every stored timestamp."""
    return datetime.now(timezone.utc)


# Ordered multimap: [(name, value), ...] with duplicates preserved
Pairs = list[tuple[str, str]]


# =============================================================================
# Endpoints
# =============================================================================

class Endpoint(BaseModel):
    """
    A registered capture endpoint.

    The id is what callers put in the URL path. The owner key is whatever
    identity key the creator had at creation time (email or subject id) and
    is used later to decide who, if anyone, gets notified.
    """
    id: str = Field(default_factory=lambda: uuid4().hex, description="Opaque unique identifier")
    name: Optional[str] = Field(default=None, description="Optional display name")
    owner_key: Optional[str] = Field(
        default=None,
        description="Identity key of the creator; None for anonymous endpoints"
    )
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def display_name(self) -> str:
        return self.name or self.id


# =============================================================================
# Captured Requests
# =============================================================================

class RequestDraft(BaseModel):
    """
    A normalized inbound request that has not been persisted yet.

    The ingestion pipeline builds one of these; the store turns it into a
    CapturedRequest by assigning the sequence.
    """
    method: str
    headers: Pairs = Field(default_factory=list)
    query: Pairs = Field(default_factory=list)
    body: Any = None
    body_encoding: Optional[str] = Field(
        default=None,
        description="'base64' when the body was binary, otherwise None"
    )
    timestamp: datetime = Field(default_factory=utcnow)


class CapturedRequest(BaseModel):
    """
    One persisted inbound request.

    Ordering between two requests on the same endpoint is fully determined
    by `sequence`, which the store assigns and never reuses.
    """
    endpoint_id: str = Field(..., description="Endpoint this request was captured against")
    sequence: int = Field(..., ge=1, description="Per-endpoint monotonically increasing id")
    method: str
    headers: Pairs = Field(default_factory=list)
    query: Pairs = Field(default_factory=list)
    body: Any = None
    body_encoding: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_draft(cls, endpoint_id: str, sequence: int, draft: RequestDraft) -> "CapturedRequest":
        return cls(endpoint_id=endpoint_id, sequence=sequence, **draft.model_dump())

    def header(self, name: str) -> Optional[str]:
        """First value of a header, case-insensitive."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    def to_event(self) -> dict[str, Any]:
        """
        Serialize for the live event stream.

        Timestamps are ISO-8601; `id` mirrors the sequence so viewers can
        dedupe and sort without knowing the internal field name.
        """
        data = self.model_dump(mode="json")
        data["id"] = self.sequence
        return data


# =============================================================================
# Notification Settings
# =============================================================================

class NotificationSetting(BaseModel):
    """
    Notification preferences for one identity key.

    The identity key may be a stable subject id or a self-reported email
    address; upstream identity is ambiguous, so both show up as keys for
    the same person and the router resolves between them.
    """
    identity_key: str = Field(..., description="Subject id or email address")
    enabled: bool = Field(default=False, description="Whether to notify at all")
    notification_email: Optional[str] = Field(
        default=None,
        description="Where notifications are delivered"
    )
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class Principal(BaseModel):
    """A verified caller, as returned by the identity verifier."""
    subject_id: str
    email: Optional[str] = None

    @property
    def identity_keys(self) -> list[str]:
        """Every key this principal's settings may be stored under."""
        keys = [self.subject_id]
        if self.email and self.email != self.subject_id:
            keys.append(self.email)
        return keys

    @property
    def owner_key(self) -> str:
        """Key recorded as endpoint owner: email when known, else subject id."""
        return self.email or self.subject_id
