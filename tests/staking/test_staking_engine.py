"""Tests for the staking engine."""

import pytest
import pytest_asyncio

from evoledger.events.bus import Topic
from evoledger.exceptions import (
    AlreadyStakedError,
    AssetNotFoundError,
    CustodyTransferError,
    NoRewardsAvailableError,
    NotOwnerError,
    NotStakedError,
    PayoutFailedError,
    PoolInactiveError,
    PoolNotFoundError,
    UnauthorizedError,
)
from evoledger.gateway.registry import InMemoryAssetRegistry
from evoledger.gateway.token import InMemoryTokenLedger
from evoledger.types import YEAR_SECONDS

from tests.conftest import build_runtime


class FlakyRegistry(InMemoryAssetRegistry):
    """Refuses transfers while ``broken`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    async def transfer(self, sender, recipient, asset_id):
        if self.broken:
            raise RuntimeError("registry offline")
        await super().transfer(sender, recipient, asset_id)


@pytest.fixture
def staking(runtime):
    return runtime.staking


@pytest_asyncio.fixture
async def pool(staking):
    return await staking.create_pool("admin", 1000, 50)


async def staked(runtime, asset, pool, utility=40):
    await runtime.ledger.set_utility_score("admin", asset, utility)
    await runtime.staking.stake("alice", asset, pool)
    return asset


# ── Pools ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pool_ids_start_at_one(staking):
    assert await staking.create_pool("admin", 1000, 50) == 1
    assert await staking.create_pool("admin", 500, 10) == 2
    assert staking.pool_count == 2

    p = staking.get_pool(2)
    assert p.base_apy == 500
    assert p.utility_multiplier == 10
    assert p.total_staked == 0
    assert p.active


@pytest.mark.asyncio
async def test_create_pool_requires_capability(runtime, staking):
    with pytest.raises(UnauthorizedError):
        await staking.create_pool("alice", 1000, 50)
    assert staking.pool_count == 0
    assert (await runtime.audit_trail.violations())[0].action == "create_pool"


@pytest.mark.asyncio
async def test_create_pool_emits_event(staking, pool, recorder):
    await staking.create_pool("admin", 200, 5)
    assert recorder.of(Topic.POOL_CREATED)[-1].data["pool_id"] == 2


# ── Staking ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stake_moves_custody(runtime, staking, asset, pool, clock, recorder):
    await staking.stake("alice", asset, pool)

    assert runtime.registry.owner_of(asset) == staking.identity
    position = staking.get_position(asset)
    assert position.staker == "alice"
    assert position.pool_id == pool
    assert position.staked_at == clock.now()
    assert position.accumulated_rewards == 0
    assert staking.get_pool(pool).total_staked == 1
    assert staking.staked_assets("alice") == [asset]
    assert recorder.of(Topic.TOKEN_STAKED)[0].data["staker"] == "alice"


@pytest.mark.asyncio
async def test_stake_requires_owner(runtime, staking, asset, pool):
    with pytest.raises(NotOwnerError):
        await staking.stake("bob", asset, pool)
    assert not staking.is_staked(asset)
    assert runtime.registry.owner_of(asset) == "alice"
    assert (await runtime.audit_trail.violations())[0].action == "stake"


@pytest.mark.asyncio
async def test_stake_twice(staking, asset, pool):
    await staking.stake("alice", asset, pool)
    with pytest.raises(AlreadyStakedError):
        await staking.stake("alice", asset, pool)
    assert staking.get_pool(pool).total_staked == 1


@pytest.mark.asyncio
async def test_stake_unknown_pool(staking, asset):
    with pytest.raises(PoolNotFoundError):
        await staking.stake("alice", asset, 9)


@pytest.mark.asyncio
async def test_stake_unknown_asset(staking, pool):
    with pytest.raises(AssetNotFoundError):
        await staking.stake("alice", 77, pool)


@pytest.mark.asyncio
async def test_stake_into_inactive_pool(runtime, staking, asset, pool):
    await staking.set_pool_active("admin", pool, False)
    with pytest.raises(PoolInactiveError):
        await staking.stake("alice", asset, pool)
    assert runtime.registry.owner_of(asset) == "alice"


@pytest.mark.asyncio
async def test_closed_pool_keeps_accruing(runtime, staking, asset, pool, clock):
    await staked(runtime, asset, pool)
    await staking.set_pool_active("admin", pool, False)
    clock.advance(YEAR_SECONDS)
    assert staking.calculate_rewards(asset) == 120


# ── Rewards ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_year_of_rewards(runtime, staking, asset, pool, clock):
    await staked(runtime, asset, pool)
    clock.advance(YEAR_SECONDS)

    assert staking.calculate_rewards(asset) == 120
    assert staking.calculate_rewards(asset) == 120
    breakdown = staking.reward_breakdown(asset)
    assert breakdown.base_rewards == 100
    assert breakdown.utility_multiplier == 20


@pytest.mark.asyncio
async def test_rewards_follow_current_utility(runtime, staking, asset, pool, clock):
    await staked(runtime, asset, pool, utility=0)
    clock.advance(YEAR_SECONDS)
    assert staking.calculate_rewards(asset) == 100

    await runtime.ledger.set_utility_score("admin", asset, 40)
    assert staking.calculate_rewards(asset) == 120


@pytest.mark.asyncio
async def test_calculate_rewards_for_unstaked_asset(staking, asset):
    with pytest.raises(NotStakedError):
        staking.calculate_rewards(asset)


@pytest.mark.asyncio
async def test_claim_rewards(runtime, staking, asset, pool, clock, recorder):
    await staked(runtime, asset, pool)
    clock.advance(YEAR_SECONDS)

    assert await staking.claim_rewards("alice", asset) == 120

    assert runtime.token_ledger.balance_of("alice") == 120
    assert staking.get_position(asset).last_claim_at == clock.now()
    assert staking.calculate_rewards(asset) == 0
    assert recorder.of(Topic.REWARDS_CLAIMED)[0].data["amount"] == 120

    with pytest.raises(NoRewardsAvailableError):
        await staking.claim_rewards("alice", asset)


@pytest.mark.asyncio
async def test_claim_by_someone_else(runtime, staking, asset, pool, clock):
    await staked(runtime, asset, pool)
    clock.advance(YEAR_SECONDS)
    with pytest.raises(NotOwnerError):
        await staking.claim_rewards("bob", asset)
    assert runtime.token_ledger.balance_of("bob") == 0


@pytest.mark.asyncio
async def test_failed_payout_rolls_back_claim():
    runtime = build_runtime(token_ledger=InMemoryTokenLedger(reserve=10))
    asset = await runtime.mint_with_personality("admin", "alice", [10, 20, 30, 40, 50])
    pool = await runtime.staking.create_pool("admin", 1000, 50)
    await staked(runtime, asset, pool)
    runtime.clock.advance(YEAR_SECONDS)
    before = runtime.staking.get_position(asset)

    with pytest.raises(PayoutFailedError):
        await runtime.staking.claim_rewards("alice", asset)

    assert runtime.staking.get_position(asset) == before
    assert runtime.staking.calculate_rewards(asset) == 120
    assert runtime.token_ledger.balance_of("alice") == 0


# ── Unstaking ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unstake_without_rewards(runtime, staking, asset, pool, recorder):
    await staking.stake("alice", asset, pool)

    assert await staking.unstake("alice", asset) == 0

    assert runtime.registry.owner_of(asset) == "alice"
    assert not staking.is_staked(asset)
    assert staking.get_pool(pool).total_staked == 0
    assert staking.staked_assets("alice") == []
    assert runtime.token_ledger.payouts == []
    assert recorder.of(Topic.TOKEN_UNSTAKED)[0].data["rewards"] == 0

    with pytest.raises(NotStakedError):
        staking.get_position(asset)


@pytest.mark.asyncio
async def test_unstake_pays_rewards(runtime, staking, asset, pool, clock):
    await staked(runtime, asset, pool)
    clock.advance(YEAR_SECONDS)

    assert await staking.unstake("alice", asset) == 120
    assert runtime.token_ledger.balance_of("alice") == 120
    assert runtime.registry.owner_of(asset) == "alice"


@pytest.mark.asyncio
async def test_unstake_by_someone_else(runtime, staking, asset, pool):
    await staking.stake("alice", asset, pool)
    with pytest.raises(NotOwnerError):
        await staking.unstake("bob", asset)
    assert staking.is_staked(asset)


@pytest.mark.asyncio
async def test_unstake_unknown_position(staking, asset):
    with pytest.raises(NotStakedError):
        await staking.unstake("alice", asset)


@pytest.mark.asyncio
async def test_failed_payout_keeps_asset_staked():
    runtime = build_runtime(token_ledger=InMemoryTokenLedger(reserve=10))
    asset = await runtime.mint_with_personality("admin", "alice", [10, 20, 30, 40, 50])
    pool = await runtime.staking.create_pool("admin", 1000, 50)
    await staked(runtime, asset, pool)
    runtime.clock.advance(YEAR_SECONDS)

    with pytest.raises(PayoutFailedError):
        await runtime.staking.unstake("alice", asset)

    assert runtime.staking.is_staked(asset)
    assert runtime.registry.owner_of(asset) == runtime.staking.identity
    assert runtime.staking.get_pool(pool).total_staked == 1
    assert runtime.staking.staked_assets("alice") == [asset]
    assert runtime.staking.calculate_rewards(asset) == 120


@pytest.mark.asyncio
async def test_failed_custody_return_keeps_asset_staked():
    registry = FlakyRegistry()
    runtime = build_runtime(registry=registry)
    asset = await runtime.mint_with_personality("admin", "alice", [10, 20, 30, 40, 50])
    pool = await runtime.staking.create_pool("admin", 1000, 50)
    await runtime.staking.stake("alice", asset, pool)
    registry.broken = True

    with pytest.raises(CustodyTransferError):
        await runtime.staking.unstake("alice", asset)

    assert runtime.staking.is_staked(asset)
    assert registry.owner_of(asset) == runtime.staking.identity
    assert runtime.staking.get_pool(pool).total_staked == 1


@pytest.mark.asyncio
async def test_failed_custody_blocks_stake():
    registry = FlakyRegistry()
    runtime = build_runtime(registry=registry)
    asset = await runtime.mint_with_personality("admin", "alice", [10, 20, 30, 40, 50])
    pool = await runtime.staking.create_pool("admin", 1000, 50)
    registry.broken = True

    with pytest.raises(CustodyTransferError):
        await runtime.staking.stake("alice", asset, pool)

    assert not runtime.staking.is_staked(asset)
    assert runtime.staking.get_pool(pool).total_staked == 0
    assert runtime.staking.staked_assets("alice") == []


@pytest.mark.asyncio
async def test_staker_index_swap_removal(runtime, staking, pool):
    assets = [
        await runtime.mint_with_personality("admin", "alice", [10, 20, 30, 40, 50])
        for _ in range(3)
    ]
    for a in assets:
        await staking.stake("alice", a, pool)

    await staking.unstake("alice", assets[0])

    assert staking.staked_assets("alice") == [assets[2], assets[1]]
    assert staking.get_pool(pool).total_staked == 2
