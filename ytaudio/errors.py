"""
Exception taxonomy and error-message classification
"""

from typing import TYPE_CHECKING, List, Optional

from .models import ErrorKind

if TYPE_CHECKING:
    from .extractor import ExtractionAttempt


class AudioProxyError(Exception):
    """Base class for errors raised by the audio proxy."""

    kind = ErrorKind.EXTRACTION_FAILED


class InvalidMediaId(AudioProxyError):
    """Identifier does not match the 11-character video id pattern."""

    kind = ErrorKind.INVALID_ID

    def __init__(self, media_id: str):
        super().__init__(f"Invalid video ID: {media_id!r}")
        self.media_id = media_id


class ExtractionFailure(AudioProxyError):
    """Every configured strategy failed for a media id."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.EXTRACTION_FAILED,
        attempts: Optional[List["ExtractionAttempt"]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.attempts = attempts or []

    @property
    def strategies_tried(self) -> List[str]:
        return [a.strategy for a in self.attempts]


class RangeNotSatisfiable(AudioProxyError):
    """Range header cannot be served against a payload of `total` bytes."""

    def __init__(self, header: str, total: int):
        super().__init__(f"Range not satisfiable: {header!r} (size {total})")
        self.header = header
        self.total = total


def classify_error(error_msg: str) -> ErrorKind:
    """Map a tool error string onto an ErrorKind."""
    error_lower = (error_msg or "").lower()

    if any(kw in error_lower for kw in ["private", "unavailable", "deleted", "removed", "geo-block", "not available in your country"]):
        return ErrorKind.VIDEO_UNAVAILABLE

    if any(kw in error_lower for kw in ["sign in", "not a bot", "confirm you"]):
        return ErrorKind.RATE_LIMITED

    if "429" in error_lower or "rate limit" in error_lower or "too many requests" in error_lower:
        return ErrorKind.RATE_LIMITED

    if "timeout" in error_lower or "timed out" in error_lower:
        return ErrorKind.TIMEOUT

    if any(kw in error_lower for kw in ["not installed", "no such file", "not found in path", "executable"]):
        return ErrorKind.TOOL_MISSING

    if any(kw in error_lower for kw in ["network", "connection", "resolve", "unreachable"]):
        return ErrorKind.NETWORK_ERROR

    return ErrorKind.EXTRACTION_FAILED
