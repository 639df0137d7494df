"""Engine capability interface the orchestrator programs against."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from modules.pipelines.request import ResolvedRequest
from modules.pipelines.resource_tier import ResourceTier
from modules.utils.errors import GenerationCancelled

GENERATING_PHASE = "Generating"

ProgressCallback = Callable[[str, int, int], None]
PreviewCallback = Callable[[Any], None]
EngineFactory = Callable[[str, ResourceTier], "ImageEngine"]


class CancellationToken:
    """Cooperative cancellation flag checked between denoising steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled()


class ImageEngine(ABC):
    """One loaded pipeline session for a single model and resource tier."""

    @property
    @abstractmethod
    def model_id(self) -> str: ...

    @abstractmethod
    def generate(
        self,
        request: ResolvedRequest,
        on_progress: ProgressCallback,
        on_preview: PreviewCallback,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Run the pipeline and return the final raster.

        ``on_progress`` receives ``(phase, completed, total)`` once per step and
        ``on_preview`` receives intermediate rasters roughly every quarter of the
        run, never for the final step. Both may be called from a worker thread.
        Raises ``PipelineError``, ``ResourceError`` or ``GenerationCancelled``.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release the loaded pipeline and any device memory it holds."""


class EngineRegistry:
    """Choose an engine implementation by model identifier."""

    def __init__(self, default_factory: Optional[EngineFactory] = None) -> None:
        self._factories: Dict[str, EngineFactory] = {}
        self._default_factory = default_factory

    def register(self, model_id: str, factory: EngineFactory) -> None:
        self._factories[model_id] = factory

    def has_backend(self, model_id: str) -> bool:
        return model_id in self._factories or self._default_factory is not None

    def create(self, model_id: str, tier: ResourceTier) -> ImageEngine:
        """Open a new engine session for ``model_id``."""
        factory = self._factories.get(model_id, self._default_factory)
        if factory is None:
            raise KeyError(f"No engine registered for model '{model_id}'")
        return factory(model_id, tier)
