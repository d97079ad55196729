"""Scripted in-memory scenario used by ``evoledger simulate``."""

from __future__ import annotations

import random

from pydantic import BaseModel, Field

from evoledger.config import EvoLedgerSettings, settings
from evoledger.events.bus import Event
from evoledger.exceptions import NotEligibleError
from evoledger.gateway.oracle import StaticOracleFeed
from evoledger.gateway.randomness import LocalRandomnessProvider
from evoledger.runtime import EngineRuntime
from evoledger.types import DAY_SECONDS, ManualClock

STAGE_REQUIREMENTS = {
    1: (1 * DAY_SECONDS, 100),
    2: (7 * DAY_SECONDS, 300),
    3: (30 * DAY_SECONDS, 1000),
}
MAX_STAGE = 5


class AssetReport(BaseModel):
    asset_id: int
    owner: str
    stage: int
    experience_points: int
    utility_score: int
    traits: list[int] = Field(default_factory=list)
    learning_rate: int = 0
    evolutions: int = 0
    rewards: int = 0


class SimulationReport(BaseModel):
    days: int
    assets: list[AssetReport] = Field(default_factory=list)
    events: dict[str, int] = Field(default_factory=dict)
    treasury_paid: int = 0


async def run_simulation(
    asset_count: int = 3,
    days: int = 30,
    seed: int = 7,
    weather: int = 72,
    config: EvoLedgerSettings | None = None,
) -> SimulationReport:
    """Evolve ``asset_count`` assets for ``days`` days, then stake them as long again."""
    config = config or settings
    clock = ManualClock()
    randomness = LocalRandomnessProvider(auto_fulfill=False)
    runtime = EngineRuntime(
        config=config,
        clock=clock,
        randomness=randomness,
        oracle=StaticOracleFeed({config.weather_series: weather}),
    )
    report = SimulationReport(days=days)

    # the bus history is bounded; count every emission as it happens
    async def count_event(event: Event) -> None:
        report.events[event.topic] = report.events.get(event.topic, 0) + 1

    runtime.event_bus.subscribe("*", count_event)
    await runtime.initialize()
    try:
        await _play(runtime, report, random.Random(seed), asset_count, days)
    finally:
        await runtime.close()
    return report


async def _play(
    runtime: EngineRuntime,
    report: SimulationReport,
    rng: random.Random,
    asset_count: int,
    days: int,
) -> None:
    admin = runtime.admin
    clock = runtime.clock

    for stage, (time_required, xp_required) in STAGE_REQUIREMENTS.items():
        await runtime.ledger.set_evolution_requirement(admin, stage, time_required, xp_required)
    for stage in range(1, MAX_STAGE):
        candidates = list(range(stage + 1, min(stage + 2, MAX_STAGE) + 1))
        await runtime.evolution.set_evolution_path(admin, stage, candidates)
    pool_id = await runtime.staking.create_pool(admin, base_apy=1000, utility_multiplier=50)

    owners: dict[int, str] = {}
    evolutions: dict[int, int] = {}
    for i in range(asset_count):
        owner = f"user-{i + 1}"
        traits = [rng.randint(1, 100) for _ in range(runtime.config.trait_count)]
        asset_id = await runtime.mint_with_personality(admin, owner, traits)
        await runtime.ledger.set_utility_score(admin, asset_id, 20 * (i + 1))
        owners[asset_id] = owner
        evolutions[asset_id] = 0

    for _ in range(days):
        clock.advance(DAY_SECONDS)
        for asset_id, owner in owners.items():
            xp = rng.randint(20, 80)
            await runtime.ledger.record_interaction(asset_id, "arena", xp)
            await runtime.personality.record_interaction(admin, asset_id, "battle", "arena", xp)
            if runtime.ledger.stage_of(asset_id) >= MAX_STAGE:
                continue
            try:
                request_id = await runtime.evolution.request_evolution(owner, asset_id)
            except NotEligibleError:
                continue
            words = [rng.getrandbits(256) for _ in range(runtime.config.randomness_words)]
            await runtime.randomness.fulfill(request_id, words)
            evolutions[asset_id] += 1

    for asset_id, owner in owners.items():
        await runtime.staking.stake(owner, asset_id, pool_id)
    clock.advance(days * DAY_SECONDS)

    for asset_id, owner in owners.items():
        rewards = await runtime.staking.unstake(owner, asset_id)
        asset = runtime.ledger.get_asset(asset_id)
        personality = runtime.personality.get_personality_data(asset_id)
        report.assets.append(AssetReport(
            asset_id=asset_id,
            owner=owner,
            stage=asset.stage,
            experience_points=asset.experience_points,
            utility_score=asset.utility_score,
            traits=personality.traits,
            learning_rate=personality.learning_rate,
            evolutions=evolutions[asset_id],
            rewards=rewards,
        ))
        report.treasury_paid += rewards
