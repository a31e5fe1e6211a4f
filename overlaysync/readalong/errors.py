"""
Error types raised by the synchronization engine.

Every error that crosses a component boundary derives from OverlaySyncError so
callers (the CLI, an HTTP layer) can report it uniformly.
"""

from typing import Optional, Tuple

PageKey = Tuple[int, int]


def format_page_key(page_key: Optional[PageKey]) -> str:
    if page_key is None:
        return ""
    job_id, page_number = page_key
    return f"job {job_id}, page {page_number}"


class OverlaySyncError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, page_key: Optional[PageKey] = None):
        self.page_key = page_key
        if page_key is not None:
            message = f"{message} ({format_page_key(page_key)})"
        super().__init__(message)


class ValidationError(OverlaySyncError):
    """A fragment or transcript is malformed; nothing was persisted."""


class NotFoundError(OverlaySyncError):
    """Unknown job, page or fragment id."""


class StorageError(OverlaySyncError):
    """Reading or writing the durable record failed."""


class AlignmentError(OverlaySyncError):
    """
    Forced alignment failed; the transcript keeps its prior state.

    ``reason`` is one of the class constants below so callers can decide
    whether a retry makes sense.
    """

    TOOL_FAILURE = "tool-failure"
    MISSING_AUDIO = "missing-audio"
    COUNT_MISMATCH = "count-mismatch"
    INVALID_INTERVAL = "invalid-interval"
    TIMEOUT = "timeout"

    def __init__(
        self,
        reason: str,
        message: str,
        page_key: Optional[PageKey] = None,
    ):
        self.reason = reason
        self.detail = message
        super().__init__(f"[{reason}] {message}", page_key)
