"""Evolution State Machine — the randomness round-trip behind every evolution.

An evolution runs in two phases:

1. ``request_evolution`` checks eligibility, asks the randomness provider
   for words and parks an ``EvolutionRequest`` in the pending table. It
   returns the provider's request id without waiting.
2. ``on_randomness_fulfilled`` arrives later, from another task, in any
   order relative to other requests. It picks the next stage from the
   configured path, derives new traits, applies both to the ledger and the
   personality engine and emits ``evolution.completed``.

A request is fulfilled at most once. A delivery claims its request
(PENDING -> FULFILLING) before any await, so a second delivery of the same
id is rejected even while the first is still running. Every check runs
before the first mutation; a rejected delivery hands the request back to
PENDING with all records untouched. Once the mutations start they run to
completion even if the delivering task is cancelled.

Notifications are emitted with the state-machine lock released.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from pydantic import BaseModel, Field

from evoledger.events.bus import EventBus, Topic
from evoledger.evolution.traits import derive_traits, weather_factor
from evoledger.exceptions import (
    AlreadyFulfilledError,
    EvoLedgerError,
    ExternalDependencyUnavailableError,
    InvalidArgumentError,
    NoEvolutionPathError,
    NotEligibleError,
    NotOwnerError,
    PersonalityNotFoundError,
    RequestNotFoundError,
    UnauthorizedError,
)
from evoledger.gateway.oracle import OracleFeed
from evoledger.gateway.randomness import RandomnessProvider
from evoledger.gateway.registry import AssetRegistry
from evoledger.ledger.assets import EvolvingAssetLedger
from evoledger.personality.engine import PersonalityEngine
from evoledger.policy.capabilities import CapabilityGuard
from evoledger.types import (
    AssetId,
    Capability,
    Clock,
    Identity,
    RequestId,
    StageAdvanceMode,
)

_logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    PENDING = "pending"
    FULFILLING = "fulfilling"
    FULFILLED = "fulfilled"


VALID_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.FULFILLING},
    RequestStatus.FULFILLING: {RequestStatus.FULFILLED, RequestStatus.PENDING},
    RequestStatus.FULFILLED: set(),  # terminal
}


class EvolutionRequest(BaseModel):
    request_id: RequestId
    asset_id: AssetId
    requester: Identity
    stage_at_request: int
    status: RequestStatus = RequestStatus.PENDING
    requested_at: int
    fulfilled_at: int | None = None
    selected_stage: int | None = None
    new_traits: list[int] = Field(default_factory=list)

    @property
    def fulfilled(self) -> bool:
        return self.status == RequestStatus.FULFILLED


class EvolutionStateMachine:
    """Drives evolutions through the randomness provider."""

    source = "evolution"

    def __init__(
        self,
        ledger: EvolvingAssetLedger,
        personality: PersonalityEngine,
        registry: AssetRegistry,
        randomness: RandomnessProvider,
        oracle: OracleFeed,
        guard: CapabilityGuard,
        event_bus: EventBus,
        clock: Clock | None = None,
        identity: Identity = "evolution-engine",
        stage_advance_mode: StageAdvanceMode = StageAdvanceMode.INCREMENT,
        trait_count: int = 5,
        randomness_words: int = 2,
        weather_series: str = "weather",
        oracle_timeout: float = 5.0,
    ) -> None:
        if randomness_words < 2:
            raise InvalidArgumentError("an evolution consumes at least two random words")
        self._ledger = ledger
        self._personality = personality
        self._registry = registry
        self._randomness = randomness
        self._oracle = oracle
        self._guard = guard
        self._bus = event_bus
        self._clock = clock or Clock()
        self.identity = identity
        self.stage_advance_mode = StageAdvanceMode(stage_advance_mode)
        self._trait_count = trait_count
        self._words = randomness_words
        self._weather_series = weather_series
        self._oracle_timeout = oracle_timeout
        self._paths: dict[int, list[int]] = {}
        self._requests: dict[RequestId, EvolutionRequest] = {}
        # deliveries that beat the pending-table insert of their own request
        self._early: dict[RequestId, list[int]] = {}
        self._requesting = 0
        self._lock = asyncio.Lock()
        randomness.set_consumer(self.on_randomness_fulfilled)

    # ── Configuration ────────────────────────────────────────────

    async def set_evolution_path(self, caller: Identity, stage: int, candidates: list[int]) -> None:
        await self._guard.require(caller, Capability.ADMIN, "set_evolution_path")
        if stage < 1:
            raise InvalidArgumentError("stages start at 1")
        if not candidates:
            raise InvalidArgumentError(f"evolution path for stage {stage} must not be empty")
        behind = [c for c in candidates if c <= stage]
        if behind:
            raise InvalidArgumentError(
                f"candidates {behind} do not advance past stage {stage}"
            )
        async with self._lock:
            self._paths[stage] = list(candidates)
        await self._guard.record(caller, "set_evolution_path", f"stage={stage} -> {candidates}")

    def get_evolution_path(self, stage: int) -> list[int]:
        return list(self._paths.get(stage, []))

    # ── Phase 1: request ─────────────────────────────────────────

    async def request_evolution(self, caller: Identity, asset_id: AssetId) -> RequestId:
        asset = self._ledger.get_asset(asset_id)
        owner = self._registry.owner_of(asset_id)
        if caller != owner and not self._guard.allows(caller, Capability.EVOLUTION_MANAGER):
            violation = f"'{caller}' may not evolve asset {asset_id}"
            await self._guard.deny(caller, "request_evolution", violation)
            raise NotOwnerError(violation)
        if not self._ledger.can_evolve(asset_id):
            raise NotEligibleError(f"Asset {asset_id} is not eligible to evolve")

        self._requesting += 1
        try:
            request_id = await self._randomness.request_random_words(self._words)
        finally:
            self._requesting -= 1

        async with self._lock:
            self._requests[request_id] = EvolutionRequest(
                request_id=request_id,
                asset_id=asset_id,
                requester=caller,
                stage_at_request=asset.stage,
                requested_at=self._clock.now(),
            )
            early_words = self._early.pop(request_id, None)

        _logger.info("Evolution requested for asset %d (request=%s)", asset_id, request_id)
        await self._bus.emit(Topic.EVOLUTION_REQUESTED, {
            "request_id": request_id,
            "asset_id": asset_id,
            "requester": caller,
            "stage": asset.stage,
        }, source=self.source)

        if early_words is not None:
            await self._replay_early(request_id, early_words)
        return request_id

    # ── Phase 2: fulfillment ─────────────────────────────────────

    async def on_randomness_fulfilled(self, request_id: RequestId, random_words: list[int]) -> None:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                if self._requesting and request_id not in self._early:
                    # the provider answered before returning the id; replayed
                    # by request_evolution once the request is recorded
                    self._early[request_id] = list(random_words)
                    _logger.debug("Parked early delivery for %s", request_id)
                    return
                raise RequestNotFoundError(f"Unknown evolution request {request_id}")
            if request.status != RequestStatus.PENDING:
                raise AlreadyFulfilledError(
                    f"Evolution request {request_id} already {request.status.value}"
                )
            if len(random_words) < 2:
                raise InvalidArgumentError("fulfillment needs at least two random words")
            path = self._paths.get(request.stage_at_request)
            if not path:
                raise NoEvolutionPathError(
                    f"No evolution path from stage {request.stage_at_request}"
                )
            next_stage = path[random_words[0] % len(path)]
            self._transition(request, RequestStatus.FULFILLING)

        try:
            weather = await self._read_weather()
            new_traits = derive_traits(random_words[1], weather, self._trait_count)
            target = None
            if self.stage_advance_mode == StageAdvanceMode.SELECTED:
                target = next_stage
            self._preflight(request.asset_id, target)
        except BaseException:
            self._transition(request, RequestStatus.PENDING)
            raise

        evolved = await asyncio.shield(self._apply(request, target, next_stage, new_traits))

        _logger.info(
            "Evolution completed for asset %d: selected stage %d (request=%s)",
            request.asset_id, next_stage, request_id,
        )
        await self._personality.notify_evolved(request.asset_id, next_stage, evolved)
        await self._bus.emit(Topic.EVOLUTION_COMPLETED, {
            "request_id": request_id,
            "asset_id": request.asset_id,
            "next_stage": next_stage,
            "new_traits": new_traits,
        }, source=self.source)

    # ── Reads ────────────────────────────────────────────────────

    def get_request(self, request_id: RequestId) -> EvolutionRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(f"Unknown evolution request {request_id}")
        return request.model_copy(deep=True)

    def pending_requests(self, asset_id: AssetId | None = None) -> list[EvolutionRequest]:
        return [
            r.model_copy(deep=True)
            for r in self._requests.values()
            if not r.fulfilled and (asset_id is None or r.asset_id == asset_id)
        ]

    # ── Internals ────────────────────────────────────────────────

    async def _apply(
        self,
        request: EvolutionRequest,
        target: int | None,
        next_stage: int,
        new_traits: list[int],
    ) -> list[int]:
        """Ledger first, then personality. Runs shielded from cancellation."""
        try:
            await self._ledger.trigger_evolution(self.identity, request.asset_id, target)
        except BaseException:
            self._transition(request, RequestStatus.PENDING)
            raise
        try:
            evolved = await self._personality.evolve_personality(
                self.identity, request.asset_id, next_stage, new_traits, notify=False,
            )
        finally:
            # the ledger has moved; the request must never apply twice
            self._transition(request, RequestStatus.FULFILLED)
            request.fulfilled_at = self._clock.now()
            request.selected_stage = next_stage
            request.new_traits = list(new_traits)
        return evolved

    async def _replay_early(self, request_id: RequestId, words: list[int]) -> None:
        try:
            await self.on_randomness_fulfilled(request_id, words)
        except EvoLedgerError as e:
            _logger.warning("Early delivery for %s was rejected: %s", request_id, e)

    async def _read_weather(self) -> int:
        try:
            value = await asyncio.wait_for(
                self._oracle.latest_value(self._weather_series),
                timeout=self._oracle_timeout,
            )
        except asyncio.TimeoutError:
            _logger.warning("Oracle '%s' timed out; using neutral weather", self._weather_series)
            return weather_factor(None)
        except ExternalDependencyUnavailableError as e:
            _logger.warning("Oracle '%s' unavailable (%s); using neutral weather", self._weather_series, e)
            return weather_factor(None)
        except Exception as e:
            _logger.warning("Oracle '%s' failed (%r); using neutral weather", self._weather_series, e)
            return weather_factor(None)
        return weather_factor(value)

    def _preflight(self, asset_id: AssetId, target: int | None) -> None:
        """Everything the two mutations below could reject, checked up front."""
        self._ledger.check_evolvable(asset_id)
        if target is not None and target <= self._ledger.stage_of(asset_id):
            raise NotEligibleError(
                f"Selected stage {target} no longer advances asset {asset_id}"
            )
        if not self._personality.has_personality(asset_id):
            raise PersonalityNotFoundError(f"No personality for asset {asset_id}")
        for capability in (Capability.EVOLUTION_MANAGER, Capability.PERSONALITY_MANAGER):
            if not self._guard.allows(self.identity, capability):
                raise UnauthorizedError(f"'{self.identity}' lacks {capability.value}")

    @staticmethod
    def _transition(request: EvolutionRequest, target: RequestStatus) -> None:
        if target not in VALID_TRANSITIONS[request.status]:
            raise EvoLedgerError(
                f"Cannot move request {request.request_id} "
                f"from {request.status.value} to {target.value}"
            )
        request.status = target
