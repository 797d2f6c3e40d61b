"""Error types shared across the bridge.

Bridge errors describe per-event failures. They are caught at the
coordinator boundary and never abort sibling events in a batch.
Platform errors are the contract between the platform clients and the
delivery pipeline: the clients translate SDK/HTTP failures into them so
the pipeline can decide which fallback applies.
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class BindingCreationError(BridgeError):
    """A destination channel could not be created for a conversation."""

    PERMISSION_DENIED = "permission_denied"
    NO_PARENT_CONTAINER = "no_parent_container"
    REMOTE_ERROR = "remote_error"
    PERSISTENCE_FAILED = "persistence_failed"

    def __init__(self, source_conversation_id: str, reason: str, detail: str = "") -> None:
        self.source_conversation_id = source_conversation_id
        self.reason = reason
        self.detail = detail
        message = f"Cannot create destination for {source_conversation_id}: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class DeliveryError(BridgeError):
    """Both the primary and the fallback delivery attempts failed."""

    def __init__(self, destination: str, reason: Optional[str] = None) -> None:
        self.destination = destination
        self.reason = reason
        super().__init__(f"Delivery to {destination} failed: {reason or 'unknown'}")


class MediaFetchError(BridgeError):
    """Source media could not be downloaded."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    TOO_LARGE = "too_large"

    def __init__(self, message_id: str, reason: str, detail: str = "") -> None:
        self.message_id = message_id
        self.reason = reason
        self.detail = detail
        super().__init__(f"Media for message {message_id} unavailable: {reason} {detail}".rstrip())


class MappingStoreError(BridgeError):
    """Durable persistence of a store document failed."""

    def __init__(self, path: str, detail: str = "") -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"Store document {path} failed: {detail}".rstrip(": "))


class PlatformError(Exception):
    """A platform API call failed."""

    def __init__(self, message: str = "", status: Optional[int] = None, code: Optional[int] = None) -> None:
        self.status = status
        self.code = code
        super().__init__(message)


class DestinationNotFoundError(PlatformError):
    """The destination channel does not exist anymore."""


class ContainerNotFoundError(PlatformError):
    """The parent container (guild or category) is not available."""


class PlatformPermissionError(PlatformError):
    """The bot lacks the permission required for the call."""


class ProxyEndpointInvalidError(PlatformError):
    """A cached proxy endpoint (webhook) was deleted or revoked."""
