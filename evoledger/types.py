"""Core types shared across all evoledger subsystems."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import TypeAlias

# ── ID Types ──────────────────────────────────────────────────────────────────

Identity: TypeAlias = str
AssetId: TypeAlias = int
PoolId: TypeAlias = int
RequestId: TypeAlias = str

DAY_SECONDS = 24 * 60 * 60
YEAR_SECONDS = 365 * DAY_SECONDS


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def is_zero_identity(identity: Identity | None) -> bool:
    return not identity or not identity.strip()


# ── Capabilities ─────────────────────────────────────────────────────────────


class Capability(str, Enum):
    ADMIN = "admin"
    MINTER = "minter"
    EVOLUTION_MANAGER = "evolution_manager"
    STAKING_MANAGER = "staking_manager"
    PERSONALITY_MANAGER = "personality_manager"


class StageAdvanceMode(str, Enum):
    """How a fulfilled evolution moves the ledger stage.

    INCREMENT advances by exactly one regardless of the selected branch.
    SELECTED jumps the ledger stage to the randomly selected candidate.
    """

    INCREMENT = "increment"
    SELECTED = "selected"


# ── Clocks ───────────────────────────────────────────────────────────────────


class Clock:
    """Wall clock in whole epoch seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """A clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise ValueError("clock cannot move backwards")
        self._now = timestamp
