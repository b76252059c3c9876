from __future__ import annotations

from enum import Enum


class SnapError(Exception):
    pass


class DiscoveryFailed(SnapError):
    pass


class OEmbedFetchFailed(SnapError):
    pass


class UnsupportedEmbedType(SnapError):
    def __init__(self, embed_type: str):
        super().__init__(f"Unsupported oEmbed type: {embed_type!r}")
        self.embed_type = embed_type


class CacheUnavailable(SnapError):
    pass


class RenderFailure(str, Enum):
    LAUNCH_FAILED = "launch_failed"
    CONTENT_LOAD_FAILED = "content_load_failed"
    TIMEOUT = "timeout"
    CAPTURE_FAILED = "capture_failed"


class RenderError(SnapError):
    def __init__(self, cause: RenderFailure, message: str = ""):
        super().__init__(f"{cause.value}: {message}" if message else cause.value)
        self.cause = cause
        self.message = message
