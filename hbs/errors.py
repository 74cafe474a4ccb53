from __future__ import annotations


class HBSError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(HBSError):
    pass


class TransportError(HBSError):
    """Network failure, timeout or cancellation. Always retryable."""


class ProtocolError(HBSError):
    """The Data Plane API answered with a non-success status or an unusable body."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class ValidationError(HBSError):
    """Malformed input caught before any request is made. Not retried."""


class SyncError(HBSError):
    """A sync pass failed; ``stage`` names the step that failed."""

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class ControllerError(HBSError):
    pass
