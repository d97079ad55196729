"""Evolving-Asset Ledger — stages, experience and utility of every asset.

The ledger owns one ``Asset`` record per minted asset plus the per-stage
``EvolutionRequirement`` table. A stage only ever moves forward, and only
through ``trigger_evolution`` once both the time gate and the XP gate of
the current stage are satisfied. A stage without a configured requirement
is immediately eligible.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from pydantic import BaseModel, Field

from evoledger.events.bus import EventBus, Topic
from evoledger.exceptions import (
    AssetNotFoundError,
    EvolutionDisabledError,
    InvalidArgumentError,
    NotOwnerError,
    PreconditionFailedError,
    RequirementsNotMetError,
)
from evoledger.gateway.registry import AssetRegistry
from evoledger.policy.capabilities import CapabilityGuard
from evoledger.safe_math import check_uint, checked_add
from evoledger.types import AssetId, Capability, Clock, Identity, is_zero_identity

_logger = logging.getLogger(__name__)

TRAIT_MIN = 1
TRAIT_MAX = 100


class Asset(BaseModel):
    asset_id: AssetId
    stage: int = 1
    utility_score: int = 0
    experience_points: int = 0
    last_evolution_time: int
    traits: list[int] = Field(default_factory=list)
    personality_hash: str
    evolution_enabled: bool = True


class EvolutionRequirement(BaseModel):
    time_required: int = 0  # seconds since the last evolution
    xp_required: int = 0


class EvolvingAssetLedger:
    """Tracks evolution state for every asset.

    Mutations are serialised behind a single lock; reads hand out copies.
    """

    source = "ledger"

    def __init__(
        self,
        registry: AssetRegistry,
        guard: CapabilityGuard,
        event_bus: EventBus,
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry
        self._guard = guard
        self._bus = event_bus
        self._clock = clock or Clock()
        self._assets: dict[AssetId, Asset] = {}
        self._requirements: dict[int, EvolutionRequirement] = {}
        self._interactions: dict[AssetId, dict[Identity, int]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    # ── Minting ──────────────────────────────────────────────────

    async def mint(
        self,
        caller: Identity,
        owner: Identity,
        traits: list[int],
        personality_hash: str,
    ) -> AssetId:
        await self._guard.require(caller, Capability.MINTER, "mint")
        if is_zero_identity(owner):
            raise InvalidArgumentError("cannot mint to the zero identity")
        if not personality_hash:
            raise InvalidArgumentError("personality hash must not be empty")
        if not traits:
            raise InvalidArgumentError("an asset needs at least one trait")
        for value in traits:
            if not TRAIT_MIN <= value <= TRAIT_MAX:
                raise InvalidArgumentError(
                    f"trait value {value} outside [{TRAIT_MIN}, {TRAIT_MAX}]"
                )

        async with self._lock:
            asset_id = await self._registry.mint(owner)
            self._assets[asset_id] = Asset(
                asset_id=asset_id,
                last_evolution_time=self._clock.now(),
                traits=list(traits),
                personality_hash=personality_hash,
            )

        _logger.info("Minted asset %d for %s", asset_id, owner)
        await self._guard.record(caller, "mint", f"owner={owner}", asset_id)
        await self._bus.emit(Topic.NFT_MINTED, {
            "asset_id": asset_id,
            "owner": owner,
            "traits": list(traits),
            "personality_hash": personality_hash,
        }, source=self.source)
        return asset_id

    # ── Experience & utility ─────────────────────────────────────

    async def record_interaction(self, asset_id: AssetId, counterpart: Identity, xp_gain: int) -> None:
        """Add XP to an asset and tally the interaction with ``counterpart``."""
        if is_zero_identity(counterpart):
            raise InvalidArgumentError("counterpart must not be empty")
        check_uint(xp_gain, "xp_gain")

        async with self._lock:
            asset = self._require_asset(asset_id)
            tally = self._interactions[asset_id]
            new_xp = checked_add(asset.experience_points, xp_gain, "experience_points")
            new_count = checked_add(tally.get(counterpart, 0), 1, "interaction_count")
            asset.experience_points = new_xp
            tally[counterpart] = new_count

        await self._bus.emit(Topic.INTERACTION_RECORDED, {
            "asset_id": asset_id,
            "counterpart": counterpart,
            "xp_gain": xp_gain,
            "experience_points": new_xp,
        }, source=self.source)

    async def set_utility_score(self, caller: Identity, asset_id: AssetId, score: int) -> None:
        await self._guard.require(caller, Capability.ADMIN, "set_utility_score")
        check_uint(score, "utility_score")

        async with self._lock:
            asset = self._require_asset(asset_id)
            old = asset.utility_score
            asset.utility_score = score

        await self._guard.record(caller, "set_utility_score", f"{old} -> {score}", asset_id)
        await self._bus.emit(Topic.UTILITY_SCORE_UPDATED, {
            "asset_id": asset_id,
            "old_score": old,
            "new_score": score,
        }, source=self.source)

    # ── Evolution gates ──────────────────────────────────────────

    async def set_evolution_requirement(
        self,
        caller: Identity,
        stage: int,
        time_required: int,
        xp_required: int,
    ) -> None:
        await self._guard.require(caller, Capability.ADMIN, "set_evolution_requirement")
        if stage < 1:
            raise InvalidArgumentError("stages start at 1")
        check_uint(time_required, "time_required")
        check_uint(xp_required, "xp_required")

        async with self._lock:
            self._requirements[stage] = EvolutionRequirement(
                time_required=time_required, xp_required=xp_required,
            )
        await self._guard.record(
            caller, "set_evolution_requirement",
            f"stage={stage} time={time_required} xp={xp_required}",
        )

    async def set_evolution_enabled(self, caller: Identity, asset_id: AssetId, enabled: bool) -> None:
        """Owner switch for evolution of a single asset."""
        async with self._lock:
            asset = self._require_asset(asset_id)
            owner = self._registry.owner_of(asset_id)
            if owner != caller:
                violation = f"'{caller}' does not own asset {asset_id}"
                await self._guard.deny(caller, "set_evolution_enabled", violation)
                raise NotOwnerError(violation)
            asset.evolution_enabled = enabled
        _logger.info("Evolution %s for asset %d", "enabled" if enabled else "disabled", asset_id)

    def get_requirement(self, stage: int) -> EvolutionRequirement:
        """Requirement for ``stage``; unconfigured stages require nothing."""
        return self._requirements.get(stage, EvolutionRequirement()).model_copy()

    def can_evolve(self, asset_id: AssetId) -> bool:
        asset = self._assets.get(asset_id)
        if asset is None:
            return False
        return self._eligibility_error(asset) is None

    async def trigger_evolution(
        self,
        caller: Identity,
        asset_id: AssetId,
        target_stage: int | None = None,
    ) -> int:
        """Advance an eligible asset and return its new stage.

        Without ``target_stage`` the stage moves up by exactly one.
        A ``target_stage`` must lie above the current stage.
        """
        await self._guard.require(caller, Capability.EVOLUTION_MANAGER, "trigger_evolution")

        async with self._lock:
            asset = self._require_asset(asset_id)
            error = self._eligibility_error(asset)
            if error is not None:
                raise error
            old_stage = asset.stage
            new_stage = old_stage + 1 if target_stage is None else target_stage
            if new_stage <= old_stage:
                raise InvalidArgumentError(
                    f"target stage {new_stage} does not advance stage {old_stage}"
                )
            asset.stage = new_stage
            asset.last_evolution_time = self._clock.now()

        _logger.info("Asset %d evolved: stage %d -> %d", asset_id, old_stage, new_stage)
        await self._guard.record(caller, "trigger_evolution", f"{old_stage} -> {new_stage}", asset_id)
        return new_stage

    def check_evolvable(self, asset_id: AssetId) -> None:
        """Raise the reason ``asset_id`` cannot evolve, if any."""
        error = self._eligibility_error(self._require_asset(asset_id))
        if error is not None:
            raise error

    # ── Reads ────────────────────────────────────────────────────

    def get_asset(self, asset_id: AssetId) -> Asset:
        return self._require_asset(asset_id).model_copy(deep=True)

    def exists(self, asset_id: AssetId) -> bool:
        return asset_id in self._assets

    def stage_of(self, asset_id: AssetId) -> int:
        return self._require_asset(asset_id).stage

    def utility_score_of(self, asset_id: AssetId) -> int:
        return self._require_asset(asset_id).utility_score

    def interaction_count(self, asset_id: AssetId, counterpart: Identity) -> int:
        self._require_asset(asset_id)
        return self._interactions.get(asset_id, {}).get(counterpart, 0)

    @property
    def asset_count(self) -> int:
        return len(self._assets)

    # ── Internals ────────────────────────────────────────────────

    def _require_asset(self, asset_id: AssetId) -> Asset:
        asset = self._assets.get(asset_id)
        if asset is None:
            raise AssetNotFoundError(f"Asset {asset_id} not found")
        return asset

    def _eligibility_error(self, asset: Asset) -> PreconditionFailedError | None:
        if not asset.evolution_enabled:
            return EvolutionDisabledError(f"Evolution disabled for asset {asset.asset_id}")
        req = self._requirements.get(asset.stage, EvolutionRequirement())
        ready_at = checked_add(asset.last_evolution_time, req.time_required, "ready_at")
        if self._clock.now() < ready_at:
            return RequirementsNotMetError(
                f"Asset {asset.asset_id} stage {asset.stage} ready at {ready_at}"
            )
        if asset.experience_points < req.xp_required:
            return RequirementsNotMetError(
                f"Asset {asset.asset_id} has {asset.experience_points}/"
                f"{req.xp_required} XP"
            )
        return None
