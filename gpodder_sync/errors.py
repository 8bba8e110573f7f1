"""Error taxonomy for gpodder.net API and sync failures."""

from typing import Any


class GpodderError(Exception):
    """Base exception for every failure raised by this library.

    Sync engines attach the resource class, device and checkpoint that were
    in effect when the failure happened so callers can pick a retry strategy.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = response
        self.resource_class: str | None = None
        self.device_id: str | None = None
        self.checkpoint: Any = None

    def attach_context(
        self,
        resource_class: str | None = None,
        device_id: str | None = None,
        checkpoint: Any = None,
    ) -> "GpodderError":
        """Record where the error happened. Returns self for re-raising."""
        self.resource_class = resource_class
        self.device_id = device_id
        self.checkpoint = checkpoint
        return self


class TransportError(GpodderError):
    """Network failure, timeout or server-side error. Safe to retry."""

    retryable = True


class AuthError(GpodderError):
    """Credentials were rejected. Re-authenticate before retrying."""


class CheckpointConflict(GpodderError):
    """The checkpoint used for a sync is stale.

    Re-read the current checkpoint and run the whole sync cycle again.
    """


class DecodeError(GpodderError):
    """Server payload did not match the expected schema."""

    def __init__(self, message: str, path: str = "$", response: Any = None) -> None:
        super().__init__(f"{path}: {message}", response=response)
        self.path = path


class ValidationError(GpodderError, ValueError):
    """Local data violates a domain invariant and was not sent."""
