"""请求规范化与校验测试。"""

from __future__ import annotations

import pytest

from modules.pipelines.model_registry import DEFAULT_MODEL, SDXL_TURBO, is_registered, resolve_model
from modules.pipelines.request import (
    MAX_SEED,
    GenerationRequest,
    OutputFormat,
    SeedPolicy,
    normalize_request,
    snap_dimension,
)
from modules.utils.errors import ValidationError


def make_request(**overrides) -> GenerationRequest:
    fields = {"prompt": "a red fox", "model_id": SDXL_TURBO.id}
    fields.update(overrides)
    return GenerationRequest(**fields)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(1000, 960), (700, 640), (64, 64), (63, 64), (0, 64), (-128, 64), (1024, 1024)],
)
def test_snap_dimension(value, expected):
    assert snap_dimension(value) == expected


def test_normalize_snaps_and_keeps_fixed_seed():
    request = make_request(width=1000, height=700, seed_policy=SeedPolicy.fixed(42))

    resolved = normalize_request(request)

    assert (resolved.width, resolved.height) == (960, 640)
    assert resolved.seed == 42
    assert resolved.prompt == "a red fox"


def test_random_seed_resolves_within_64_bits():
    resolved = normalize_request(make_request())

    assert 0 <= resolved.seed <= MAX_SEED


def test_random_seed_is_drawn_per_dispatch():
    request = make_request()
    seeds = {normalize_request(request).seed for _ in range(5)}

    assert len(seeds) > 1


def test_replay_reproduces_request_with_fixed_seed():
    resolved = normalize_request(make_request(width=1000, height=700))

    replay = resolved.replay()

    assert replay.seed_policy.value == resolved.seed
    assert normalize_request(replay) == resolved


@pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
def test_empty_prompt_rejected(prompt):
    with pytest.raises(ValidationError):
        normalize_request(make_request(prompt=prompt))


@pytest.mark.parametrize("steps", [0, 51, 2.5, True])
def test_invalid_steps_rejected(steps):
    with pytest.raises(ValidationError):
        normalize_request(make_request(steps=steps))


@pytest.mark.parametrize("guidance", [-0.5, 20.5])
def test_guidance_out_of_range_rejected(guidance):
    with pytest.raises(ValidationError):
        normalize_request(make_request(guidance_scale=guidance))


def test_unknown_model_rejected():
    with pytest.raises(ValidationError):
        normalize_request(make_request(model_id="someone/unknown-model"))


def test_seed_out_of_range_rejected():
    with pytest.raises(ValidationError):
        normalize_request(make_request(seed_policy=SeedPolicy.fixed(MAX_SEED + 1)))


def test_max_seed_accepted():
    resolved = normalize_request(make_request(seed_policy=SeedPolicy.fixed(MAX_SEED)))

    assert resolved.seed == MAX_SEED


def test_preview_interval():
    assert normalize_request(make_request(steps=4)).preview_interval == 1
    assert normalize_request(make_request(steps=20)).preview_interval == 5
    assert normalize_request(make_request(steps=1)).preview_interval == 1


@pytest.mark.parametrize(
    ("value", "expected"),
    [("PNG", OutputFormat.PNG), ("jpg", OutputFormat.JPEG), ("JPEG", OutputFormat.JPEG)],
)
def test_output_format_parse(value, expected):
    assert OutputFormat.parse(value) is expected


def test_output_format_parse_default():
    assert OutputFormat.parse("webp", default=OutputFormat.PNG) is OutputFormat.PNG
    with pytest.raises(ValueError):
        OutputFormat.parse("webp")


def test_model_lookup():
    assert is_registered(SDXL_TURBO.id)
    assert not is_registered("nobody/nothing")
    assert resolve_model("nobody/nothing") is DEFAULT_MODEL
    assert resolve_model(None) is DEFAULT_MODEL
