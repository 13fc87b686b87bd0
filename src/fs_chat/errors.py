"""Exception taxonomy for the message-processing pipeline."""
from __future__ import annotations


class FsChatError(Exception):
    """Base class for all fs_chat errors."""


# -----------------------------
# Step-level errors (abort the current pipeline invocation)
# -----------------------------
class PersistenceFailed(FsChatError):
    """Store put/get returned a non-ok status, no key/value, or a malformed payload."""


class ResolutionError(FsChatError):
    """A history chain could not be walked back to its root."""

    def __init__(self, message_id: str, reason: str) -> None:
        super().__init__(f"Cannot resolve message {message_id!r}: {reason}")
        self.message_id = message_id
        self.reason = reason


class GenerationFailed(FsChatError):
    """The generation backend call failed or returned an unexpected shape."""


# -----------------------------
# Per-command errors (captured into Result records)
# -----------------------------
class PermissionDenied(FsChatError):
    def __init__(self, operation: str, permissions) -> None:
        allowed = ", ".join(sorted(permissions)) or "none"
        super().__init__(
            f"Operation '{operation}' is not permitted (permissions: {allowed})"
        )
        self.operation = operation


class ExecutorUnavailable(FsChatError):
    def __init__(self) -> None:
        super().__init__("executor unavailable")


class ExecutorRequestFailed(FsChatError):
    """Transport-level failure talking to the filesystem executor."""


class ExecutorResponseInvalid(FsChatError):
    """The executor answered with something that is not a protocol response."""
