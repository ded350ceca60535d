"""Error types surfaced by the download API.

Every error that can be reported before the first media byte is sent derives
from :class:`DownloaderError`; the FastAPI exception handler in ``server``
renders it as ``{"error": ..., "details": ...}`` with ``status_code``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class DownloaderError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidLocator(DownloaderError):
    status_code = 400
    default_message = "Invalid YouTube URL"


class ExtractionFailed(DownloaderError):
    """yt-dlp exited non-zero (or timed out) before any media byte was sent."""

    default_message = "Extraction failed"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[str] = None,
        returncode: Optional[int] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, details)
        self.returncode = returncode
        self.timed_out = timed_out


class MalformedMetadata(DownloaderError):
    default_message = "Failed to parse video information"


class SpawnFailed(DownloaderError):
    default_message = "Failed to start yt-dlp"


class ServiceUnavailable(DownloaderError):
    status_code = 503
    default_message = "Server is shutting down"


class ClientAborted(DownloaderError):
    """The client went away before the response was committed. Not reported to anyone."""

    status_code = 499
    default_message = "Client closed request"
