############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# tiers.py: VRAM tier table for local model selection
#
############################################################

"""Pick an Ollama model size class from available VRAM.

The provisioning scripts each carried their own copy of this table with
drifting thresholds; this is the one canonical version. A GPU with less
than 2 GB gets no local model at all.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

MIN_LOCAL_VRAM_GB = 2


@dataclass(frozen=True)
class VramTier:
    """A capacity bucket and the models it runs."""

    name: str
    rank: int
    min_vram_gb: int
    model: str
    sidecar_model: Optional[str]
    description: str


TIERS: Tuple[VramTier, ...] = (
    VramTier(
        name="Large",
        rank=4,
        min_vram_gb=12,
        model="deepseek-coder-v2:16b",
        sidecar_model="qwen2.5-coder:7b",
        description="16B params, best code quality, needs ~12GB VRAM",
    ),
    VramTier(
        name="Medium",
        rank=3,
        min_vram_gb=8,
        model="deepseek-coder-v2:lite",
        sidecar_model=None,
        description="Lite variant, good balance of quality and speed",
    ),
    VramTier(
        name="Medium-Small",
        rank=2,
        min_vram_gb=4,
        model="deepseek-coder:6.7b",
        sidecar_model=None,
        description="6.7B params, solid code completion",
    ),
    VramTier(
        name="Small",
        rank=1,
        min_vram_gb=MIN_LOCAL_VRAM_GB,
        model="qwen2.5-coder:1.5b",
        sidecar_model=None,
        description="1.5B params, fast, low VRAM",
    ),
)


def select_model_tier(vram_gb: Optional[float]) -> Optional[VramTier]:
    """Return the largest tier that fits in ``vram_gb``, or None."""
    if vram_gb is None:
        return None
    for tier in TIERS:
        if vram_gb >= tier.min_vram_gb:
            return tier
    return None


def tier_rank(vram_gb: Optional[float]) -> int:
    """Integer rank of the tier for ``vram_gb`` (0 when excluded)."""
    tier = select_model_tier(vram_gb)
    return tier.rank if tier else 0


def tier_by_name(name: str) -> Optional[VramTier]:
    """Look a tier up by name, case-insensitively."""
    wanted = name.strip().lower()
    for tier in TIERS:
        if tier.name.lower() == wanted:
            return tier
    return None
