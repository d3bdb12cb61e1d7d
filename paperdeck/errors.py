"""
Error types surfaced by the pipeline.

Every stage failure ends up as a job record with ``status=failed``; the
message of the exception becomes the record's ``error`` field, so messages
must be human-readable and must never contain credentials.
"""

from typing import Optional
from urllib.parse import urlsplit


class PaperdeckError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InputError(PaperdeckError):
    """Raised for bad caller input (missing upload, malformed job id)."""


class UpstreamServiceError(PaperdeckError):
    """Raised when an external provider fails, times out or returns garbage."""

    def __init__(self, message: str, endpoint: Optional[str] = None, status_code: Optional[int] = None):
        self.endpoint = redact_url(endpoint) if endpoint else None
        self.status_code = status_code
        parts = [message]
        if status_code is not None:
            parts.append(str(status_code))
        if self.endpoint:
            parts.append(f"({self.endpoint})")
        super().__init__(" ".join(parts))


class SlideValidationError(PaperdeckError):
    """Raised when model-returned slide data does not satisfy the slide schema."""


class LayoutValidationError(PaperdeckError):
    """Raised when a model-chosen layout or its slots are invalid."""


class ConsistencyError(PaperdeckError):
    """Raised when artifacts from earlier stages do not line up."""


class RenderRuntimeError(PaperdeckError):
    """Raised when the deck template, reveal runtime or browser output is unusable."""


class CommandError(PaperdeckError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: str = "", stdout: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = stderr.strip() or stdout.strip() or "unknown error"
        super().__init__(f"Command failed ({command}, exit {returncode}): {detail}")


def redact_url(url: str) -> str:
    """Reduce a URL to its path so query secrets and hosts never leak into errors."""
    parts = urlsplit(url)
    return parts.path or "/"
