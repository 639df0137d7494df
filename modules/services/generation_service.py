"""Generation orchestration: one supervised, cancellable job at a time."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from config.settings import AppConfig
from modules.pipelines.engine import (
    GENERATING_PHASE,
    CancellationToken,
    EngineRegistry,
    ImageEngine,
    PreviewCallback,
    ProgressCallback,
)
from modules.pipelines.request import GenerationRequest, ResolvedRequest, normalize_request
from modules.pipelines.resource_tier import ResourceTier, apply_tier, detect_total_memory, select_tier
from modules.services.history_service import GenerationHistoryService, GenerationRecord
from modules.services.model_manager import ModelManager
from modules.utils.errors import (
    BusyError,
    GenerationCancelled,
    LocalImgError,
    PipelineError,
    ResourceError,
    StoreError,
    TransportError,
    ValidationError,
)
from modules.utils.image_utils import encode_image

logger = logging.getLogger(__name__)

DOWNLOADING_PHASE = "Downloading"


class GenerationState(str, Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    AWAITING_MODEL = "awaiting_model"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Final raster plus everything needed to reproduce it."""

    image: Any
    image_data: bytes
    request: ResolvedRequest
    record_id: Optional[str]

    @property
    def seed(self) -> int:
        return self.request.seed


def _guarded(callback: Optional[Callable[..., None]], name: str) -> Callable[..., None]:
    """Wrap a listener so its failures never reach the pipeline."""

    def _call(*args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("%s listener failed", name)

    return _call


class GenerationOrchestrator:
    """Drive a request through normalization, provisioning, generation and persistence.

    Only one request may be in flight; a concurrent :meth:`submit` raises
    :class:`BusyError` without touching the running job. Progress and preview
    listeners may be invoked from the engine's worker thread.
    """

    def __init__(
        self,
        config: AppConfig,
        store: GenerationHistoryService,
        engines: EngineRegistry,
        provisioner: ModelManager,
        tier: Optional[ResourceTier] = None,
        total_memory: Callable[[], int] = detect_total_memory,
    ) -> None:
        self.config = config
        self.store = store
        self.engines = engines
        self.provisioner = provisioner
        self.tier = tier or select_tier(total_memory())
        apply_tier(self.tier)

        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = GenerationState.IDLE
        self._last_outcome: Optional[GenerationState] = None
        self._active_token: Optional[CancellationToken] = None
        self._active_session: Optional[ImageEngine] = None

    # State -------------------------------------------------------------------
    @property
    def state(self) -> GenerationState:
        with self._state_lock:
            return self._state

    @property
    def last_outcome(self) -> Optional[GenerationState]:
        with self._state_lock:
            return self._last_outcome

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    @property
    def active_session(self) -> Optional[ImageEngine]:
        return self._active_session

    def _transition(self, state: GenerationState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        logger.info("Generation state %s -> %s", previous.value, state.value)

    def reload_config(self, config: AppConfig) -> None:
        """Swap the configuration read by subsequent submissions."""
        self.config = config

    def cancel(self) -> bool:
        """Cancel the in-flight request, if any."""
        token = self._active_token
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested")
        return True

    # Submission --------------------------------------------------------------
    def submit(
        self,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback] = None,
        on_preview: Optional[PreviewCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GenerationResult:
        """Run ``request`` to completion on the calling thread.

        Raises ``BusyError`` immediately when another request is in flight,
        ``ValidationError`` before any work starts, ``GenerationCancelled`` when
        cancelled before finalizing, and ``TransportError``/``ResourceError``/
        ``PipelineError`` verbatim. A ``StoreError`` raised while saving carries
        the finished :class:`GenerationResult` in ``error.result``.
        """
        if not self._busy.acquire(blocking=False):
            raise BusyError()

        token = cancel_token or CancellationToken()
        self._active_token = token
        progress = _guarded(on_progress, "progress")
        preview = _guarded(on_preview, "preview")
        config = self.config
        outcome = GenerationState.FAILED
        try:
            self._transition(GenerationState.NORMALIZING)
            resolved = self._normalize(request)
            token.raise_if_cancelled()

            self._await_model(config, resolved.model_id, progress, token)

            self._transition(GenerationState.GENERATING)
            image = self._generate(resolved, progress, preview, token)
            token.raise_if_cancelled()

            self._transition(GenerationState.FINALIZING)
            result = self._finalize(resolved, image)
            outcome = GenerationState.COMPLETED
            return result
        except GenerationCancelled:
            outcome = GenerationState.CANCELLED
            raise
        except LocalImgError as exc:
            logger.warning("Generation failed: %s", exc)
            raise
        finally:
            self._transition(outcome)
            with self._state_lock:
                self._last_outcome = outcome
            self._transition(GenerationState.IDLE)
            self._active_token = None
            self._busy.release()

    def _normalize(self, request: GenerationRequest) -> ResolvedRequest:
        try:
            return normalize_request(request)
        except LocalImgError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise ValidationError(f"请求参数无效：{exc}") from exc

    def _await_model(
        self,
        config: AppConfig,
        model_id: str,
        progress: ProgressCallback,
        token: CancellationToken,
    ) -> None:
        try:
            cached = self.provisioner.is_cached(model_id, config.custom_model_cache_path)
        except OSError as exc:
            raise ResourceError(f"无法检查模型缓存：{exc}") from exc
        if cached:
            return
        self._transition(GenerationState.AWAITING_MODEL)
        if not config.allow_download:
            raise ResourceError(f"模型未下载且已禁用自动下载：{model_id}")
        try:
            self.provisioner.download(
                model_id,
                on_progress=lambda fraction: progress(DOWNLOADING_PHASE, int(round(fraction * 100)), 100),
            )
        except LocalImgError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"模型下载失败：{exc}") from exc
        token.raise_if_cancelled()

    def _generate(
        self,
        request: ResolvedRequest,
        progress: ProgressCallback,
        preview: PreviewCallback,
        token: CancellationToken,
    ) -> Any:
        try:
            session = self.engines.create(request.model_id, self.tier)
        except KeyError as exc:
            raise PipelineError(f"没有可用于模型 {request.model_id} 的生成后端") from exc

        self._active_session = session
        try:
            return session.generate(
                request,
                on_progress=lambda _phase, completed, total: progress(GENERATING_PHASE, completed, total),
                on_preview=preview,
                cancel_token=token,
            )
        except LocalImgError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PipelineError(str(exc)) from exc
        finally:
            self._active_session = None
            try:
                session.close()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to close engine session for %s", request.model_id)

    def _finalize(self, request: ResolvedRequest, image: Any) -> GenerationResult:
        try:
            image_data = encode_image(image, request.output_format)
        except (OSError, ValueError, AttributeError) as exc:
            raise PipelineError(f"图像编码失败：{exc}") from exc

        result = GenerationResult(image=image, image_data=image_data, request=request, record_id=None)
        try:
            record_id = self.store.append(GenerationRecord.from_request(request, image_data))
        except StoreError as exc:
            logger.error("Generated image could not be saved: %s", exc)
            raise StoreError(str(exc), result=result) from exc
        return GenerationResult(image=image, image_data=image_data, request=request, record_id=record_id)
