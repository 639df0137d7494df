"""Text2ImageEngine 单元测试。"""

from types import SimpleNamespace

import pytest
import torch

from config.settings import AppConfig
from modules.pipelines import resource_tier, text2img
from modules.pipelines.engine import CancellationToken
from modules.pipelines.model_registry import SDXL_TURBO, STABLE_DIFFUSION_21_BASE
from modules.pipelines.request import GenerationRequest, SeedPolicy, normalize_request
from modules.pipelines.resource_tier import GIB, select_tier
from modules.utils.errors import GenerationCancelled, PipelineError, ResourceError


class DummyPipeline:
    """模拟 Diffusers 管线，捕获调用参数并逐步触发回调。"""

    latest: "DummyPipeline | None" = None
    load_error: "Exception | None" = None

    def __init__(self) -> None:
        self.model_id = ""
        self.kwargs = {}
        self.device = None
        self.xformers_enabled = False
        self.vae_tiling_enabled = False
        self.attention_slicing_enabled = False
        self.called_with = None
        self.fail_with: "Exception | None" = None
        self.images = ["fake-image"]

    @classmethod
    def from_pretrained(cls, model_id: str, **kwargs):
        if cls.load_error is not None:
            raise cls.load_error
        instance = cls()
        instance.model_id = model_id
        instance.kwargs = kwargs
        cls.latest = instance
        return instance

    def to(self, device: str):
        self.device = device
        return self

    def enable_xformers_memory_efficient_attention(self):
        self.xformers_enabled = True

    def enable_vae_tiling(self):
        self.vae_tiling_enabled = True

    def enable_attention_slicing(self):
        self.attention_slicing_enabled = True

    def __call__(self, **kwargs):
        self.called_with = kwargs
        if self.fail_with is not None:
            raise self.fail_with
        callback = kwargs.get("callback_on_step_end")
        for step in range(kwargs["num_inference_steps"]):
            if callback is not None:
                callback(self, step, 1000 - step, {"latents": f"latents-{step}"})
        return SimpleNamespace(images=list(self.images))


@pytest.fixture(autouse=True)
def force_cpu(monkeypatch):
    """强制使用 CPU，避免与真实 CUDA 环境耦合。"""
    monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
    monkeypatch.setattr(text2img, "AutoPipelineForText2Image", DummyPipeline)
    DummyPipeline.latest = None
    DummyPipeline.load_error = None
    resource_tier.reset_budget()
    yield
    resource_tier.reset_budget()


def make_engine(tmp_path, model_id=SDXL_TURBO.id, tier=None, **config_overrides):
    config = AppConfig(model_dir=tmp_path, **config_overrides)
    return text2img.Text2ImageEngine(config, model_id, tier or select_tier(16 * GIB))


def resolve(**overrides):
    fields = {
        "prompt": "test prompt",
        "model_id": SDXL_TURBO.id,
        "steps": 8,
        "width": 512,
        "height": 512,
        "seed_policy": SeedPolicy.fixed(123),
    }
    fields.update(overrides)
    return normalize_request(GenerationRequest(**fields))


def test_load_pipeline_uses_config(tmp_path):
    engine = make_engine(tmp_path, enable_xformers=True, enable_vae_tiling=True)
    engine.load_pipeline()

    pipeline = DummyPipeline.latest
    assert pipeline is not None
    assert pipeline.model_id == SDXL_TURBO.id
    assert pipeline.kwargs["torch_dtype"] == torch.float32  # CPU 环境应使用 float32
    assert pipeline.kwargs["cache_dir"] == str(tmp_path)
    assert pipeline.kwargs["local_files_only"] is True
    assert pipeline.device == "cpu"
    assert pipeline.vae_tiling_enabled is True
    assert pipeline.xformers_enabled is False
    assert engine._pipeline is pipeline


def test_load_pipeline_is_lazy_and_cached(tmp_path):
    engine = make_engine(tmp_path)

    first = engine.load_pipeline()
    second = engine.load_pipeline()

    assert first is second


def test_conservative_tier_enables_attention_slicing(tmp_path):
    tier = select_tier(4 * GIB)
    resource_tier.apply_tier(tier)
    engine = make_engine(tmp_path, tier=tier, enable_vae_tiling=False)

    engine.load_pipeline()

    pipeline = DummyPipeline.latest
    assert pipeline.attention_slicing_enabled is True
    assert pipeline.vae_tiling_enabled is True
    # CPU 上始终使用 float32
    assert pipeline.kwargs["torch_dtype"] == torch.float32


def test_missing_weights_raise_resource_error(tmp_path):
    DummyPipeline.load_error = OSError("no such file")
    engine = make_engine(tmp_path)

    with pytest.raises(ResourceError):
        engine.load_pipeline()


def test_generate_reports_progress_and_previews(tmp_path, monkeypatch):
    engine = make_engine(tmp_path)
    monkeypatch.setattr(engine, "_decode_preview", lambda pipe, latents: f"preview:{latents}")
    progress = []
    previews = []

    image = engine.generate(
        resolve(),
        on_progress=lambda phase, done, total: progress.append((phase, done, total)),
        on_preview=previews.append,
    )

    pipeline = DummyPipeline.latest
    assert image == "fake-image"
    assert progress == [("Generating", step, 8) for step in range(1, 9)]
    assert previews == ["preview:latents-1", "preview:latents-3", "preview:latents-5"]
    assert pipeline.called_with["num_inference_steps"] == 8
    assert pipeline.called_with["width"] == 512
    assert pipeline.called_with["generator"] is not None
    assert "negative_prompt" not in pipeline.called_with


def test_negative_prompt_only_for_supporting_models(tmp_path):
    engine = make_engine(tmp_path, model_id=STABLE_DIFFUSION_21_BASE.id)

    engine.generate(
        resolve(model_id=STABLE_DIFFUSION_21_BASE.id, negative_prompt="blurry", steps=2),
        on_progress=lambda *_: None,
        on_preview=lambda _: None,
    )

    assert DummyPipeline.latest.called_with["negative_prompt"] == "blurry"


def test_preview_failure_does_not_abort(tmp_path, monkeypatch):
    engine = make_engine(tmp_path)

    def _broken(pipe, latents):
        raise RuntimeError("vae exploded")

    monkeypatch.setattr(engine, "_decode_preview", _broken)

    assert engine.generate(resolve(), lambda *_: None, lambda _: None) == "fake-image"


def test_cancellation_stops_between_steps(tmp_path):
    engine = make_engine(tmp_path)
    token = CancellationToken()
    seen = []

    def _progress(phase, done, total):
        seen.append(done)
        if done == 3:
            token.cancel()

    with pytest.raises(GenerationCancelled):
        engine.generate(resolve(steps=8), _progress, lambda _: None, cancel_token=token)

    assert seen == [1, 2, 3]


def test_pipeline_exception_becomes_pipeline_error(tmp_path):
    engine = make_engine(tmp_path)
    engine.load_pipeline().fail_with = RuntimeError("CUDA out of memory")

    with pytest.raises(PipelineError):
        engine.generate(resolve(), lambda *_: None, lambda _: None)


def test_empty_output_is_pipeline_error(tmp_path):
    engine = make_engine(tmp_path)
    engine.load_pipeline().images = []

    with pytest.raises(PipelineError):
        engine.generate(resolve(), lambda *_: None, lambda _: None)


def test_close_drops_pipeline(tmp_path):
    engine = make_engine(tmp_path)
    engine.load_pipeline()

    engine.close()

    assert engine._pipeline is None
