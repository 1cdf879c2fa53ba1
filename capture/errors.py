"""Error types for the request catcher."""


class CaptureError(Exception):
    """Base error for the request catcher."""


class EndpointNotFound(CaptureError):
    """Raised when an operation targets an endpoint that does not exist."""

    def __init__(self, endpoint_id: str):
        super().__init__(f"Endpoint not found: {endpoint_id}")
        self.endpoint_id = endpoint_id


class InvalidRequest(CaptureError):
    """Raised when an inbound request cannot be normalized."""


class StorageFailure(CaptureError):
    """Raised when the store cannot append or read."""


class TransportFailure(CaptureError):
    """Raised when a notification cannot be handed to the transport."""


class AuthenticationFailed(CaptureError):
    """Raised when an identity token cannot be verified."""


class PermissionDenied(CaptureError):
    """Raised when a verified caller acts on something it does not own."""
