"""Reward arithmetic for staking positions.

All amounts are integers and every division truncates. The order of
operations is fixed so results match to the unit everywhere:

    base  = elapsed * reward_unit * base_apy // YEAR // 10000
    boost = min(utility_score * pool_multiplier // 100, 300)
    total = base * (100 + boost) // 100 + accumulated
"""

from __future__ import annotations

from pydantic import BaseModel

from evoledger.safe_math import check_uint, checked_add, checked_mul
from evoledger.types import YEAR_SECONDS

BASIS_POINTS = 10_000
MAX_UTILITY_MULTIPLIER = 300
DEFAULT_REWARD_UNIT = 1000


class RewardBreakdown(BaseModel):
    elapsed: int
    base_rewards: int
    utility_multiplier: int
    accumulated: int
    total: int


def utility_multiplier(utility_score: int, pool_multiplier: int) -> int:
    """Effective percentage boost, clamped to ``MAX_UTILITY_MULTIPLIER``."""
    return min(checked_mul(utility_score, pool_multiplier, "utility") // 100, MAX_UTILITY_MULTIPLIER)


def compute_rewards(
    elapsed: int,
    base_apy: int,
    pool_multiplier: int,
    utility_score: int,
    accumulated: int = 0,
    reward_unit: int = DEFAULT_REWARD_UNIT,
) -> RewardBreakdown:
    check_uint(elapsed, "elapsed")
    check_uint(base_apy, "base_apy")
    base = checked_mul(checked_mul(elapsed, reward_unit, "rewards"), base_apy, "rewards")
    base = base // YEAR_SECONDS // BASIS_POINTS
    boost = utility_multiplier(utility_score, pool_multiplier)
    total = checked_add(checked_mul(base, 100 + boost, "rewards") // 100, accumulated, "rewards")
    return RewardBreakdown(
        elapsed=elapsed,
        base_rewards=base,
        utility_multiplier=boost,
        accumulated=accumulated,
        total=total,
    )
