"""
Shared infrastructure for the request catcher.

This package contains the pieces the fan-out engine and the HTTP surface
both use:
- Domain models (Endpoint, CapturedRequest, NotificationSetting)
- The in-memory data store
- The notification transport and its message template
- Settings, errors and identity verification
"""

from capture.models import (
    CapturedRequest,
    Endpoint,
    NotificationSetting,
    Principal,
    RequestDraft,
)
from capture.data_store import DataStore
from capture.channels import EmailChannel, NotificationMessage, NotificationResult

__all__ = [
    "CapturedRequest",
    "Endpoint",
    "NotificationSetting",
    "Principal",
    "RequestDraft",
    "DataStore",
    "EmailChannel",
    "NotificationMessage",
    "NotificationResult",
]
