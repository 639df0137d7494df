"""资源档位选择测试。"""

from __future__ import annotations

import pytest
import torch

from modules.pipelines import resource_tier
from modules.pipelines.resource_tier import GIB, TierName, apply_tier, current_budget, select_tier


@pytest.fixture(autouse=True)
def clean_budget(monkeypatch):
    monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
    resource_tier.reset_budget()
    yield
    resource_tier.reset_budget()


@pytest.mark.parametrize(
    ("total", "expected"),
    [(0, TierName.CONSERVATIVE), (4 * GIB, TierName.CONSERVATIVE), (8 * GIB - 1, TierName.CONSERVATIVE)],
)
def test_low_memory_selects_conservative(total, expected):
    tier = select_tier(total)

    assert tier.name is expected
    assert tier.quantize is True
    assert tier.memory_limit_bytes == 3 * GIB


@pytest.mark.parametrize("total", [8 * GIB, 16 * GIB, 64 * GIB])
def test_high_memory_selects_standard(total):
    tier = select_tier(total)

    assert tier.name is TierName.STANDARD
    assert tier.quantize is False
    assert tier.memory_limit_bytes is None
    assert tier.cache_limit_bytes > select_tier(0).cache_limit_bytes


def test_apply_tier_is_idempotent():
    tier = select_tier(4 * GIB)

    assert apply_tier(tier) is True
    assert apply_tier(tier) is False
    assert current_budget().memory_limit_bytes == 3 * GIB


def test_apply_tier_replaces_previous_budget():
    apply_tier(select_tier(4 * GIB))
    apply_tier(select_tier(32 * GIB))

    budget = current_budget()
    assert budget.memory_limit_bytes is None
    assert budget.tier is not None and budget.tier.name is TierName.STANDARD


def test_detect_total_memory_handles_missing_sysconf(monkeypatch):
    def _fail(name):
        raise ValueError(name)

    monkeypatch.setattr(resource_tier.os, "sysconf", _fail)

    assert resource_tier.detect_total_memory() == 0
