"""Error types shared by the capture proxy and the transcoding pipeline."""

from __future__ import annotations


class LaunchError(Exception):
    """Browser process could not be started."""


class CaptureTimeout(Exception):
    """No manifest URL was observed on the source page."""

    def __init__(self, source_url: str) -> None:
        super().__init__(f"No .m3u8 found on {source_url}")
        self.source_url = source_url


class SessionNotFoundError(Exception):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown or expired session: {session_id}")
        self.session_id = session_id


class UpstreamError(Exception):
    """All header tiers failed. ``status`` is None when no response was received."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UpstreamManifestError(UpstreamError):
    pass


class UpstreamSegmentError(UpstreamError):
    pass


class EncoderProcessError(Exception):
    def __init__(self, stream_id: str, message: str) -> None:
        super().__init__(f"Stream {stream_id}: {message}")
        self.stream_id = stream_id
