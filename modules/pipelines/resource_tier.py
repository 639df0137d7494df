"""Host-memory driven resource strategy for the diffusion engine."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import torch

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024
CONSERVATIVE_THRESHOLD = 8 * GIB


class TierName(str, Enum):
    CONSERVATIVE = "conservative"
    STANDARD = "standard"


@dataclass(frozen=True, slots=True)
class ResourceTier:
    """Precision and memory budget chosen once per process."""

    name: TierName
    quantize: bool
    cache_limit_bytes: int
    memory_limit_bytes: Optional[int]
    total_memory_bytes: int

    @property
    def conservative(self) -> bool:
        return self.name is TierName.CONSERVATIVE


def select_tier(total_memory_bytes: int) -> ResourceTier:
    """Map total host memory to a tier: below 8 GiB is conservative."""
    if total_memory_bytes < CONSERVATIVE_THRESHOLD:
        return ResourceTier(
            name=TierName.CONSERVATIVE,
            quantize=True,
            cache_limit_bytes=1 * MIB,
            memory_limit_bytes=3 * GIB,
            total_memory_bytes=total_memory_bytes,
        )
    return ResourceTier(
        name=TierName.STANDARD,
        quantize=False,
        cache_limit_bytes=256 * MIB,
        memory_limit_bytes=None,
        total_memory_bytes=total_memory_bytes,
    )


def detect_total_memory() -> int:
    """Return total physical memory in bytes, or 0 when it cannot be determined."""
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        logger.warning("Unable to read host memory; assuming conservative tier")
        return 0
    if pages <= 0 or page_size <= 0:
        return 0
    return int(pages) * int(page_size)


@dataclass(slots=True)
class EngineMemoryBudget:
    """Process-wide working-set budget shared by every engine session."""

    cache_limit_bytes: Optional[int] = None
    memory_limit_bytes: Optional[int] = None
    tier: Optional[ResourceTier] = None


_budget = EngineMemoryBudget()
_budget_lock = threading.Lock()


def current_budget() -> EngineMemoryBudget:
    return _budget


def apply_tier(tier: ResourceTier) -> bool:
    """Apply the tier's ceilings to the process-wide engine budget.

    Returns ``False`` when the same tier is already applied.
    """
    with _budget_lock:
        if _budget.tier == tier:
            return False
        _budget.cache_limit_bytes = tier.cache_limit_bytes
        _budget.memory_limit_bytes = tier.memory_limit_bytes
        _budget.tier = tier
        _apply_device_memory_limit(tier)
    logger.info(
        "Applied %s resource tier (cache limit %d MiB, memory limit %s)",
        tier.name.value,
        tier.cache_limit_bytes // MIB,
        f"{tier.memory_limit_bytes // GIB} GiB" if tier.memory_limit_bytes else "none",
    )
    return True


def reset_budget() -> None:
    """Forget the applied tier (used by tests and explicit reloads)."""
    with _budget_lock:
        _budget.cache_limit_bytes = None
        _budget.memory_limit_bytes = None
        _budget.tier = None


def _apply_device_memory_limit(tier: ResourceTier) -> None:
    if tier.memory_limit_bytes is None or not torch.cuda.is_available():
        return
    device_total = torch.cuda.get_device_properties(0).total_memory
    if device_total <= 0:
        return
    fraction = min(1.0, tier.memory_limit_bytes / device_total)
    torch.cuda.set_per_process_memory_fraction(fraction)
