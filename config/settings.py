"""Configuration helpers for the LocalImg project."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from modules.pipelines.model_registry import DEFAULT_MODEL, resolve_model
from modules.pipelines.request import GenerationRequest, OutputFormat, SeedPolicy

DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 768


@dataclass(slots=True)
class AppConfig:
    """Centralized application configuration.

    Values are read once at startup (see :func:`load_config`) and passed
    explicitly to the services that need them.
    """

    model_dir: Path = Path("models")
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")
    output_dir: Path = Path("outputs")
    use_fp16: bool = True
    enable_xformers: bool = True
    enable_vae_tiling: bool = True
    allow_download: bool = True
    log_level: str = "INFO"
    selected_model_id: str = DEFAULT_MODEL.id
    default_steps: Optional[int] = None
    default_guidance_scale: Optional[float] = None
    default_width: int = DEFAULT_WIDTH
    default_height: int = DEFAULT_HEIGHT
    default_output_format: OutputFormat = OutputFormat.PNG
    custom_model_cache_path: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def history_db_path(self) -> Path:
        return Path(self.data_dir) / "history.sqlite3"

    @property
    def blob_dir(self) -> Path:
        return Path(self.data_dir) / "blobs"

    def resolved_steps(self) -> int:
        """Configured default steps, falling back to the selected model's default."""
        if self.default_steps and self.default_steps > 0:
            return self.default_steps
        return resolve_model(self.selected_model_id).default_steps

    def resolved_guidance_scale(self) -> float:
        if self.default_guidance_scale is not None:
            return self.default_guidance_scale
        return resolve_model(self.selected_model_id).default_guidance_scale

    def default_request(self, prompt: str = "") -> GenerationRequest:
        """Build a request pre-filled with the configured generation defaults."""
        return GenerationRequest(
            prompt=prompt,
            model_id=resolve_model(self.selected_model_id).id,
            steps=self.resolved_steps(),
            guidance_scale=self.resolved_guidance_scale(),
            width=self.default_width,
            height=self.default_height,
            seed_policy=SeedPolicy.random(),
            output_format=self.default_output_format,
        )


def _load_env_file(path: Path) -> None:
    """Populate environment variables from a simple KEY=VALUE .env file."""
    if not path.exists():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ[key.strip()] = value.strip()


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Return an AppConfig instance with environment-aware settings."""
    env_path = Path(config_path) if config_path else Path(".env")
    _load_env_file(env_path)

    model_dir = Path(os.getenv("MODEL_DIR", "models")).expanduser().resolve()
    data_dir = Path(os.getenv("LOCALIMG_DATA_DIR", "data")).expanduser().resolve()
    log_dir = Path(os.getenv("LOCALIMG_LOG_DIR", "logs")).expanduser()
    output_dir = Path(os.getenv("LOCALIMG_OUTPUT_DIR", "outputs")).expanduser()

    selected_model = resolve_model(os.getenv("LOCALIMG_SELECTED_MODEL_ID"))
    output_format = OutputFormat.parse(
        os.getenv("LOCALIMG_DEFAULT_OUTPUT_FORMAT"), default=OutputFormat.PNG
    )
    custom_cache = os.getenv("LOCALIMG_CUSTOM_MODEL_CACHE_PATH") or None

    metadata: dict[str, Any] = {"selected_model_name": selected_model.name}
    hf_token = os.getenv("HF_TOKEN")
    if hf_token:
        metadata["hf_token"] = hf_token

    return AppConfig(
        model_dir=model_dir,
        data_dir=data_dir,
        log_dir=log_dir,
        output_dir=output_dir,
        use_fp16=_env_bool("LOCALIMG_USE_FP16", True),
        enable_xformers=_env_bool("LOCALIMG_ENABLE_XFORMERS", True),
        enable_vae_tiling=_env_bool("LOCALIMG_ENABLE_VAE_TILING", True),
        allow_download=_env_bool("LOCALIMG_ALLOW_DOWNLOAD", True),
        log_level=os.getenv("LOCALIMG_LOG_LEVEL", "INFO"),
        selected_model_id=selected_model.id,
        default_steps=_env_int("LOCALIMG_DEFAULT_STEPS"),
        default_guidance_scale=_env_float("LOCALIMG_DEFAULT_GUIDANCE_SCALE"),
        default_width=_env_int("LOCALIMG_DEFAULT_WIDTH") or DEFAULT_WIDTH,
        default_height=_env_int("LOCALIMG_DEFAULT_HEIGHT") or DEFAULT_HEIGHT,
        default_output_format=output_format,
        custom_model_cache_path=custom_cache,
        metadata=metadata,
    )
