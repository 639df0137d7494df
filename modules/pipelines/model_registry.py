"""Static registry of the diffusion models the application knows how to run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True, slots=True)
class ModelInfo:
    """Metadata for a specific Stable Diffusion model."""

    id: str
    name: str
    description: str
    estimated_size_gb: float
    supports_negative_prompt: bool
    default_steps: int
    default_guidance_scale: float


SDXL_TURBO = ModelInfo(
    id="stabilityai/sdxl-turbo",
    name="SDXL Turbo",
    description="Fast generation (4 steps). High quality.",
    estimated_size_gb=6.0,
    supports_negative_prompt=False,
    default_steps=4,
    default_guidance_scale=0.0,
)

STABLE_DIFFUSION_21_BASE = ModelInfo(
    id="stabilityai/stable-diffusion-2-1-base",
    name="Stable Diffusion 2.1 Base",
    description="Standard 512x512 model. Good balance.",
    estimated_size_gb=3.5,
    supports_negative_prompt=True,
    default_steps=25,
    default_guidance_scale=7.5,
)

DEFAULT_MODEL = SDXL_TURBO

_MODELS: Dict[str, ModelInfo] = {model.id: model for model in (SDXL_TURBO, STABLE_DIFFUSION_21_BASE)}


def available_models() -> List[ModelInfo]:
    """Return every registered model in display order."""
    return list(_MODELS.values())


def resolve_model(model_id: str | None) -> ModelInfo:
    """Return the registered model or fall back to the default one."""
    if not model_id:
        return DEFAULT_MODEL
    return _MODELS.get(model_id, DEFAULT_MODEL)


def is_registered(model_id: str) -> bool:
    return model_id in _MODELS
