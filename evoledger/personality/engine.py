"""Personality Engine — learned traits, skills and social memory per asset.

Personalities learn from interactions: every interaction raises the
experience level, grows a skill for its interaction type and strengthens
the social connection with the counterpart. Once experience reaches
``EXPERIENCE_THRESHOLD`` the learning rate creeps up by one and the
experience resets. Evolution applies a trait bonus and a larger
learning-rate boost. Trait values never exceed ``TRAIT_CAP`` and the
learning rate never exceeds ``MAX_LEARNING_RATE``.

The memory log is append-only and unbounded.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from evoledger.events.bus import EventBus, Topic
from evoledger.exceptions import (
    AlreadyInitializedError,
    InvalidArgumentError,
    PersonalityNotFoundError,
)
from evoledger.policy.capabilities import CapabilityGuard
from evoledger.safe_math import check_uint, checked_add
from evoledger.types import AssetId, Capability, Identity, is_zero_identity

_logger = logging.getLogger(__name__)

TRAIT_CAP = 100
MAX_LEARNING_RATE = 50
EXPERIENCE_THRESHOLD = 1000
EVOLUTION_LEARNING_BOOST = 5


class MemoryEntry(BaseModel):
    data: Any
    stored_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PersonalityState(BaseModel):
    asset_id: AssetId
    traits: list[int] = Field(default_factory=list)
    learning_rate: int = 0
    experience_level: int = 0
    stage: int = 1
    interaction_counts: dict[str, int] = Field(default_factory=dict)
    skill_levels: dict[str, int] = Field(default_factory=dict)
    social_connections: dict[str, int] = Field(default_factory=dict)
    memories: list[MemoryEntry] = Field(default_factory=list)


class PersonalityEngine:
    source = "personality"

    def __init__(self, guard: CapabilityGuard, event_bus: EventBus) -> None:
        self._guard = guard
        self._bus = event_bus
        self._personalities: dict[AssetId, PersonalityState] = {}
        self._lock = asyncio.Lock()

    async def initialize_personality(
        self,
        caller: Identity,
        asset_id: AssetId,
        initial_traits: list[int],
        learning_rate: int,
    ) -> None:
        await self._guard.require(caller, Capability.PERSONALITY_MANAGER, "initialize_personality")
        self.validate_seed(initial_traits, learning_rate)

        async with self._lock:
            if asset_id in self._personalities:
                raise AlreadyInitializedError(f"Personality of asset {asset_id} already initialized")
            self._personalities[asset_id] = PersonalityState(
                asset_id=asset_id,
                traits=[min(v, TRAIT_CAP) for v in initial_traits],
                learning_rate=learning_rate,
            )
        _logger.info("Initialized personality for asset %d (rate=%d)", asset_id, learning_rate)

    async def record_interaction(
        self,
        caller: Identity,
        asset_id: AssetId,
        interaction_type: str,
        counterpart: Identity,
        intensity: int,
    ) -> None:
        """Learn from one interaction."""
        await self._guard.require(caller, Capability.PERSONALITY_MANAGER, "record_interaction")
        if not interaction_type:
            raise InvalidArgumentError("interaction type must not be empty")
        if is_zero_identity(counterpart):
            raise InvalidArgumentError("counterpart must not be empty")
        check_uint(intensity, "intensity")

        async with self._lock:
            p = self._require(asset_id)
            skill_gain = intensity * p.learning_rate // 100

            # compute everything before touching state
            count = checked_add(p.interaction_counts.get(interaction_type, 0), 1, "interaction_count")
            strength = checked_add(p.social_connections.get(counterpart, 0), intensity, "social_strength")
            skill = checked_add(p.skill_levels.get(interaction_type, 0), skill_gain, "skill_level")
            experience = checked_add(p.experience_level, intensity, "experience_level")

            p.interaction_counts[interaction_type] = count
            p.social_connections[counterpart] = strength
            p.skill_levels[interaction_type] = skill
            p.experience_level = experience
            self._check_growth(p)

        await self._bus.emit(Topic.INTERACTION_LEARNED, {
            "asset_id": asset_id,
            "interaction_type": interaction_type,
            "skill_gain": skill_gain,
        }, source=self.source)
        await self._bus.emit(Topic.SOCIAL_CONNECTION_FORMED, {
            "asset_id": asset_id,
            "counterpart": counterpart,
            "strength": strength,
        }, source=self.source)

    async def evolve_personality(
        self,
        caller: Identity,
        asset_id: AssetId,
        new_stage: int,
        evolution_bonus: list[int],
        notify: bool = True,
    ) -> list[int]:
        """Apply an evolution bonus pairwise and boost the learning rate.

        With ``notify=False`` the caller emits ``personality.evolved`` itself
        through ``notify_evolved``.
        """
        await self._guard.require(caller, Capability.PERSONALITY_MANAGER, "evolve_personality")
        for value in evolution_bonus:
            check_uint(value, "bonus")

        async with self._lock:
            p = self._require(asset_id)
            evolved = list(p.traits)
            for i, bonus in enumerate(evolution_bonus[:len(evolved)]):
                evolved[i] = min(checked_add(evolved[i], bonus, "trait"), TRAIT_CAP)
            p.traits = evolved
            p.learning_rate = min(p.learning_rate + EVOLUTION_LEARNING_BOOST, MAX_LEARNING_RATE)
            p.stage = new_stage
            traits = list(p.traits)

        if notify:
            await self.notify_evolved(asset_id, new_stage, traits)
        return traits

    async def notify_evolved(self, asset_id: AssetId, new_stage: int, traits: list[int]) -> None:
        await self._bus.emit(Topic.PERSONALITY_EVOLVED, {
            "asset_id": asset_id,
            "new_stage": new_stage,
            "traits": list(traits),
        }, source=self.source)

    async def store_memory(self, caller: Identity, asset_id: AssetId, memory_data: Any) -> int:
        """Append to the memory log and return the entry's index."""
        await self._guard.require(caller, Capability.PERSONALITY_MANAGER, "store_memory")
        async with self._lock:
            p = self._require(asset_id)
            p.memories.append(MemoryEntry(data=memory_data))
            index = len(p.memories) - 1

        await self._bus.emit(Topic.MEMORY_STORED, {
            "asset_id": asset_id,
            "index": index,
        }, source=self.source)
        return index

    @staticmethod
    def validate_seed(initial_traits: list[int], learning_rate: int) -> None:
        """Raise if ``initialize_personality`` would refuse these values."""
        if not 0 <= learning_rate <= MAX_LEARNING_RATE:
            raise InvalidArgumentError(
                f"learning rate {learning_rate} outside [0, {MAX_LEARNING_RATE}]"
            )
        for value in initial_traits:
            check_uint(value, "trait")

    # ── Reads ────────────────────────────────────────────────────

    def has_personality(self, asset_id: AssetId) -> bool:
        return asset_id in self._personalities

    def get_personality_data(self, asset_id: AssetId) -> PersonalityState:
        return self._require(asset_id).model_copy(deep=True)

    def get_social_connection(self, asset_id: AssetId, counterpart: Identity) -> int:
        return self._require(asset_id).social_connections.get(counterpart, 0)

    def get_skill_level(self, asset_id: AssetId, interaction_type: str) -> int:
        return self._require(asset_id).skill_levels.get(interaction_type, 0)

    # ── Internals ────────────────────────────────────────────────

    def _require(self, asset_id: AssetId) -> PersonalityState:
        p = self._personalities.get(asset_id)
        if p is None:
            raise PersonalityNotFoundError(f"No personality for asset {asset_id}")
        return p

    @staticmethod
    def _check_growth(p: PersonalityState) -> None:
        if p.experience_level >= EXPERIENCE_THRESHOLD and p.learning_rate < MAX_LEARNING_RATE:
            p.learning_rate += 1
            p.experience_level = 0
            _logger.debug("Asset %d learning rate grew to %d", p.asset_id, p.learning_rate)
