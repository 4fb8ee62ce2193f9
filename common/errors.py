from __future__ import annotations

from typing import Optional


class WebARError(Exception):
    """Base class for every error raised by the compilation/upload core."""


class InvalidParameter(WebARError, ValueError):
    """Malformed input (scale, empty/undecodable image, empty file). Never retried."""


class CompilationError(WebARError):
    """External compiler missing or failing, or descriptor serialization failure."""


class UploadError(WebARError):
    """
    Terminal upload failure.

    Attributes:
        cause: last underlying exception (if any)
        attempts: number of direct-transfer attempts made before giving up
    """

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message)
        self.cause = cause
        self.attempts = int(attempts)

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            base = f"{base} (cause: {self.cause})"
        if self.attempts:
            base = f"{base} [attempts={self.attempts}]"
        return base


class CredentialError(UploadError):
    """Backend refused, timed out, or returned garbage while issuing an upload credential."""


class TransferError(UploadError):
    """Network failure or non-2xx response while writing to object storage."""

    def __init__(self, message: str, *, status: Optional[int] = None, **kw):
        super().__init__(message, **kw)
        self.status = status


class AbortError(UploadError):
    """Explicit cancellation or transfer timeout. Never retried, no fallback."""
