"""Error taxonomy shared by the generation, storage and cache layers."""

from __future__ import annotations

from typing import Any, Optional


class LocalImgError(Exception):
    """Base class for all LocalImg failures."""


class ValidationError(LocalImgError):
    """The request is malformed and never reaches the pipeline."""


class BusyError(LocalImgError):
    """Another generation is already in flight."""

    def __init__(self, message: str = "已有生成任务正在进行，请稍后再试。") -> None:
        super().__init__(message)


class TransportError(LocalImgError):
    """Model weights could not be downloaded."""


class ResourceError(LocalImgError):
    """Required model weights are missing and cannot be provisioned."""


class PipelineError(LocalImgError):
    """The diffusion pipeline failed internally."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class StoreError(LocalImgError):
    """Persistence I/O failure.

    When raised from the finalizing phase of a generation, ``result`` carries the
    finished image so the caller can still display it.
    """

    def __init__(self, message: str, result: Optional[Any] = None) -> None:
        self.result = result
        super().__init__(message)


class CacheDecodeError(LocalImgError):
    """Stored image bytes could not be decoded into a raster."""


class GenerationCancelled(LocalImgError):
    """The generation was cancelled before it could be finalized."""

    def __init__(self, message: str = "生成已取消。") -> None:
        super().__init__(message)
