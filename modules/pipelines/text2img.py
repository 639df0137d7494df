"""Text-to-image engine backed by a diffusers pipeline."""

from __future__ import annotations

import gc
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import torch
from diffusers import AutoPipelineForText2Image

from config.settings import AppConfig
from modules.pipelines.engine import (
    GENERATING_PHASE,
    CancellationToken,
    EngineRegistry,
    ImageEngine,
    PreviewCallback,
    ProgressCallback,
)
from modules.pipelines.model_registry import resolve_model
from modules.pipelines.request import ResolvedRequest
from modules.pipelines.resource_tier import ResourceTier, current_budget
from modules.utils.errors import GenerationCancelled, PipelineError, ResourceError
from modules.utils.model_loader import candidate_roots, locate_model

logger = logging.getLogger(__name__)


class Text2ImageEngine(ImageEngine):
    """Facade around a Stable Diffusion pipeline for one model and tier."""

    def __init__(self, config: AppConfig, model_id: str, tier: ResourceTier) -> None:
        self.config = config
        self.tier = tier
        self._model_id = model_id
        self._pipeline: Optional[Any] = None
        self._device: Optional[str] = None

    @property
    def model_id(self) -> str:
        return self._model_id

    def _preferred_device(self) -> str:
        """Return the preferred torch device."""
        if torch.cuda.is_available():
            return "cuda"
        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps"
        return "cpu"

    def _preferred_dtype(self, device: str) -> torch.dtype:
        """Half precision only for the conservative tier on an accelerator."""
        if self.tier.quantize and self.config.use_fp16 and device != "cpu":
            return torch.float16
        return torch.float32

    def _cache_dir(self) -> Path:
        roots = candidate_roots(self.config.model_dir, self.config.custom_model_cache_path)
        return locate_model(self._model_id, roots) or roots[0]

    def load_pipeline(self) -> Any:
        """Lazy-load the text-to-image pipeline from the local cache."""
        if self._pipeline is not None:
            return self._pipeline

        device = self._preferred_device()
        dtype = self._preferred_dtype(device)
        cache_dir = self._cache_dir()

        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                self._model_id,
                torch_dtype=dtype,
                cache_dir=str(cache_dir),
                use_safetensors=True,
                local_files_only=True,
            )
        except OSError as exc:
            raise ResourceError(f"模型权重缺失或不完整：{self._model_id}（{exc}）") from exc

        budget = current_budget()
        if self.tier.conservative and device == "cuda":
            pipeline.enable_model_cpu_offload()
        else:
            pipeline.to(device)
        if budget.memory_limit_bytes is not None and hasattr(pipeline, "enable_attention_slicing"):
            pipeline.enable_attention_slicing()

        if self.config.enable_xformers and device == "cuda":
            try:
                pipeline.enable_xformers_memory_efficient_attention()
            except Exception as exc:  # noqa: BLE001
                # xformers 不可用时保持功能可用
                logger.debug("xformers unavailable: %s", exc)

        if (self.config.enable_vae_tiling or self.tier.conservative) and hasattr(pipeline, "enable_vae_tiling"):
            pipeline.enable_vae_tiling()

        self._pipeline = pipeline
        self._device = device
        logger.info("Loaded %s on %s (%s, tier=%s)", self._model_id, device, dtype, self.tier.name.value)
        return pipeline

    def _build_kwargs(self, request: ResolvedRequest) -> Dict[str, Any]:
        generator = torch.Generator(device="cpu" if self._device == "mps" else self._device or "cpu")
        generator.manual_seed(request.seed)

        kwargs: Dict[str, Any] = {
            "prompt": request.prompt,
            "guidance_scale": request.guidance_scale,
            "num_inference_steps": request.steps,
            "width": request.width,
            "height": request.height,
            "generator": generator,
            "output_type": "pil",
        }
        if request.negative_prompt and resolve_model(request.model_id).supports_negative_prompt:
            kwargs["negative_prompt"] = request.negative_prompt
        return kwargs

    def _decode_preview(self, pipeline: Any, latents: Any) -> Any:
        vae = pipeline.vae
        with torch.no_grad():
            scaled = latents / vae.config.scaling_factor
            decoded = vae.decode(scaled.to(vae.dtype), return_dict=False)[0]
        return pipeline.image_processor.postprocess(decoded, output_type="pil")[0]

    def generate(
        self,
        request: ResolvedRequest,
        on_progress: ProgressCallback,
        on_preview: PreviewCallback,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Generate an image, reporting every step and previewing every quarter."""
        pipeline = self.load_pipeline()
        total = request.steps
        interval = request.preview_interval

        def _on_step_end(pipe: Any, step: int, timestep: Any, callback_kwargs: Dict[str, Any]) -> Dict[str, Any]:
            completed = int(step) + 1
            on_progress(GENERATING_PHASE, completed, total)
            latents = callback_kwargs.get("latents")
            if latents is not None and completed % interval == 0 and completed < total:
                try:
                    on_preview(self._decode_preview(pipe, latents))
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Preview decode failed at step %d: %s", completed, exc)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            return callback_kwargs

        kwargs = self._build_kwargs(request)
        kwargs["callback_on_step_end"] = _on_step_end
        kwargs["callback_on_step_end_tensor_inputs"] = ["latents"]

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            result = pipeline(**kwargs)
        except GenerationCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PipelineError(f"生成失败：{exc}") from exc

        images = list(getattr(result, "images", []) or [])
        if not images:
            raise PipelineError("生成失败：未收到任何图像输出。")
        return images[0]

    def close(self) -> None:
        """Drop the pipeline and return device memory."""
        if self._pipeline is None:
            return
        self._pipeline = None
        self._device = None
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()


def build_engine_registry(config: AppConfig) -> EngineRegistry:
    """Registry whose default backend is the diffusers engine."""

    def _factory(model_id: str, tier: ResourceTier) -> ImageEngine:
        return Text2ImageEngine(config, model_id, tier)

    return EngineRegistry(default_factory=_factory)
