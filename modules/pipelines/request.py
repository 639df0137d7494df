"""Generation request types and the normalization applied before dispatch."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from modules.pipelines.model_registry import is_registered
from modules.utils.errors import ValidationError

MIN_STEPS = 1
MAX_STEPS = 50
MIN_GUIDANCE = 0.0
MAX_GUIDANCE = 20.0
DIMENSION_MULTIPLE = 64
MAX_SEED = 2**64 - 1


class OutputFormat(str, Enum):
    """Supported output encodings."""

    PNG = "png"
    JPEG = "jpeg"

    @property
    def file_extension(self) -> str:
        return "png" if self is OutputFormat.PNG else "jpg"

    @property
    def lossless(self) -> bool:
        return self is OutputFormat.PNG

    @classmethod
    def parse(cls, value: object, default: "OutputFormat | None" = None) -> "OutputFormat":
        """Accept enum members or case-insensitive names such as ``"PNG"`` or ``"jpg"``."""
        if isinstance(value, OutputFormat):
            return value
        text = str(value or "").strip().lower()
        if text == "jpg":
            text = "jpeg"
        try:
            return cls(text)
        except ValueError:
            if default is not None:
                return default
            raise


@dataclass(frozen=True, slots=True)
class SeedPolicy:
    """Either a fixed 64-bit seed or "draw a fresh one at dispatch"."""

    value: Optional[int] = None

    @classmethod
    def random(cls) -> "SeedPolicy":
        return cls(None)

    @classmethod
    def fixed(cls, value: int) -> "SeedPolicy":
        return cls(int(value))

    @property
    def is_random(self) -> bool:
        return self.value is None

    def resolve(self) -> int:
        """Return the effective seed for one dispatch."""
        if self.value is None:
            return secrets.randbits(64)
        return self.value


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """Immutable description of one text-to-image generation."""

    prompt: str
    model_id: str
    negative_prompt: str = ""
    steps: int = 4
    guidance_scale: float = 0.0
    width: int = 1024
    height: int = 768
    seed_policy: SeedPolicy = SeedPolicy()
    output_format: OutputFormat = OutputFormat.PNG


@dataclass(frozen=True, slots=True)
class ResolvedRequest:
    """A request after normalization: snapped dimensions and a concrete seed."""

    prompt: str
    model_id: str
    negative_prompt: str
    steps: int
    guidance_scale: float
    width: int
    height: int
    seed: int
    output_format: OutputFormat

    def replay(self) -> GenerationRequest:
        """Return a request that reproduces this generation exactly."""
        return GenerationRequest(
            prompt=self.prompt,
            model_id=self.model_id,
            negative_prompt=self.negative_prompt,
            steps=self.steps,
            guidance_scale=self.guidance_scale,
            width=self.width,
            height=self.height,
            seed_policy=SeedPolicy.fixed(self.seed),
            output_format=self.output_format,
        )

    @property
    def preview_interval(self) -> int:
        return max(1, self.steps // 4)


def snap_dimension(value: int) -> int:
    """Round down to a multiple of 64, never below 64."""
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        numeric = DIMENSION_MULTIPLE
    return (max(DIMENSION_MULTIPLE, numeric) // DIMENSION_MULTIPLE) * DIMENSION_MULTIPLE


def validate_request(request: GenerationRequest) -> None:
    """Reject requests that must never reach the pipeline."""
    if not request.prompt or not request.prompt.strip():
        raise ValidationError("提示词不能为空。")
    if isinstance(request.steps, bool) or not isinstance(request.steps, int):
        raise ValidationError(f"采样步数必须为整数，收到 {request.steps!r}。")
    if not MIN_STEPS <= request.steps <= MAX_STEPS:
        raise ValidationError(f"采样步数必须在 {MIN_STEPS}-{MAX_STEPS} 之间，收到 {request.steps}。")
    if not MIN_GUIDANCE <= float(request.guidance_scale) <= MAX_GUIDANCE:
        raise ValidationError(
            f"引导系数必须在 {MIN_GUIDANCE}-{MAX_GUIDANCE} 之间，收到 {request.guidance_scale}。"
        )
    seed = request.seed_policy.value
    if seed is not None and not 0 <= seed <= MAX_SEED:
        raise ValidationError(f"随机种子必须是 64 位无符号整数，收到 {seed}。")
    if not is_registered(request.model_id):
        raise ValidationError(f"未知模型：{request.model_id}")


def normalize_request(request: GenerationRequest) -> ResolvedRequest:
    """Validate the request, snap its dimensions and resolve its seed once."""
    validate_request(request)
    return ResolvedRequest(
        prompt=request.prompt,
        model_id=request.model_id,
        negative_prompt=request.negative_prompt or "",
        steps=request.steps,
        guidance_scale=float(request.guidance_scale),
        width=snap_dimension(request.width),
        height=snap_dimension(request.height),
        seed=request.seed_policy.resolve(),
        output_format=OutputFormat.parse(request.output_format),
    )

