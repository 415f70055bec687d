"""
Error Taxonomy

Every failure the pipeline reports is one of these. The web layer maps
them onto HTTP status codes; nothing inside the core retries on its own.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all engagement pipeline errors."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidArgument(PipelineError):
    """Malformed input. Rejected synchronously, never retried."""


class MalformedSample(InvalidArgument):
    """A single telemetry sample could not be decoded."""

    def __init__(self, message: str = "", index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class NotFound(PipelineError):
    """Unknown session, lesson or progress record."""


class Conflict(PipelineError):
    """Lost a race on the single-open-session invariant. Retry once."""


class SessionClosed(Conflict):
    """Telemetry arrived for a session that has already been closed."""


class StorageUnavailable(PipelineError):
    """Transient storage failure. The caller retries with backoff."""
