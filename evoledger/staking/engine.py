"""Staking Engine — utility-linked yield for assets held in custody.

Staking moves an asset into the engine's custody through the asset
registry and opens a position in a pool. Rewards accrue with time and
scale with the asset's utility score (see ``staking.rewards``). Claiming
flushes the accrued amount to the staker through the token ledger;
unstaking pays out, hands the asset back and closes the position.

Internal state is always updated before the external payout, and rolled
back if the payout or the custody transfer fails.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel

from evoledger.events.bus import EventBus, Topic
from evoledger.exceptions import (
    AlreadyStakedError,
    AssetNotFoundError,
    CustodyTransferError,
    EvoLedgerError,
    NoRewardsAvailableError,
    NotOwnerError,
    NotStakedError,
    PayoutFailedError,
    PoolInactiveError,
    PoolNotFoundError,
)
from evoledger.gateway.registry import AssetRegistry
from evoledger.gateway.token import TokenLedger
from evoledger.ledger.assets import EvolvingAssetLedger
from evoledger.policy.capabilities import CapabilityGuard
from evoledger.safe_math import check_uint, checked_add, checked_sub
from evoledger.staking.rewards import DEFAULT_REWARD_UNIT, RewardBreakdown, compute_rewards
from evoledger.types import AssetId, Capability, Clock, Identity, PoolId

_logger = logging.getLogger(__name__)


class StakingPool(BaseModel):
    pool_id: PoolId
    base_apy: int  # basis points
    utility_multiplier: int
    total_staked: int = 0
    active: bool = True


class StakingPosition(BaseModel):
    asset_id: AssetId
    pool_id: PoolId
    staker: Identity
    staked_at: int
    last_claim_at: int
    accumulated_rewards: int = 0


class StakingEngine:
    source = "staking"

    def __init__(
        self,
        ledger: EvolvingAssetLedger,
        registry: AssetRegistry,
        token_ledger: TokenLedger,
        guard: CapabilityGuard,
        event_bus: EventBus,
        clock: Clock | None = None,
        identity: Identity = "staking-engine",
        reward_unit: int = DEFAULT_REWARD_UNIT,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._token = token_ledger
        self._guard = guard
        self._bus = event_bus
        self._clock = clock or Clock()
        self.identity = identity
        self._reward_unit = reward_unit
        self._pools: dict[PoolId, StakingPool] = {}
        self._positions: dict[AssetId, StakingPosition] = {}
        self._staked_by: dict[Identity, list[AssetId]] = {}
        self._next_pool_id: PoolId = 1
        self._lock = asyncio.Lock()

    # ── Pools ────────────────────────────────────────────────────

    async def create_pool(self, caller: Identity, base_apy: int, utility_multiplier: int) -> PoolId:
        await self._guard.require(caller, Capability.STAKING_MANAGER, "create_pool")
        check_uint(base_apy, "base_apy")
        check_uint(utility_multiplier, "utility_multiplier")

        async with self._lock:
            pool_id = self._next_pool_id
            self._next_pool_id += 1
            self._pools[pool_id] = StakingPool(
                pool_id=pool_id,
                base_apy=base_apy,
                utility_multiplier=utility_multiplier,
            )

        _logger.info("Created pool %d (apy=%dbps, multiplier=%d)", pool_id, base_apy, utility_multiplier)
        await self._guard.record(caller, "create_pool", f"pool={pool_id}")
        await self._bus.emit(Topic.POOL_CREATED, {
            "pool_id": pool_id,
            "base_apy": base_apy,
            "utility_multiplier": utility_multiplier,
        }, source=self.source)
        return pool_id

    async def set_pool_active(self, caller: Identity, pool_id: PoolId, active: bool) -> None:
        """Open or close a pool to new stakes. Existing positions keep accruing."""
        await self._guard.require(caller, Capability.STAKING_MANAGER, "set_pool_active")
        async with self._lock:
            self._require_pool(pool_id).active = active
        await self._guard.record(caller, "set_pool_active", f"pool={pool_id} active={active}")

    # ── Positions ────────────────────────────────────────────────

    async def stake(self, caller: Identity, asset_id: AssetId, pool_id: PoolId) -> None:
        async with self._lock:
            if asset_id in self._positions:
                raise AlreadyStakedError(f"Asset {asset_id} is already staked")
            if not self._ledger.exists(asset_id):
                raise AssetNotFoundError(f"Asset {asset_id} not found")
            owner = self._registry.owner_of(asset_id)
            if owner != caller:
                violation = f"'{caller}' does not own asset {asset_id}"
                await self._guard.deny(caller, "stake", violation)
                raise NotOwnerError(violation)
            pool = self._require_pool(pool_id)
            if not pool.active:
                raise PoolInactiveError(f"Pool {pool_id} is not accepting stakes")
            new_total = checked_add(pool.total_staked, 1, "total_staked")

            await self._move_custody(caller, self.identity, asset_id)

            now = self._clock.now()
            self._positions[asset_id] = StakingPosition(
                asset_id=asset_id,
                pool_id=pool_id,
                staker=caller,
                staked_at=now,
                last_claim_at=now,
            )
            pool.total_staked = new_total
            self._staked_by.setdefault(caller, []).append(asset_id)

        _logger.info("Asset %d staked in pool %d by %s", asset_id, pool_id, caller)
        await self._bus.emit(Topic.TOKEN_STAKED, {
            "asset_id": asset_id,
            "pool_id": pool_id,
            "staker": caller,
        }, source=self.source)

    def calculate_rewards(self, asset_id: AssetId) -> int:
        return self.reward_breakdown(asset_id).total

    def reward_breakdown(self, asset_id: AssetId) -> RewardBreakdown:
        position = self._require_position(asset_id)
        pool = self._require_pool(position.pool_id)
        elapsed = max(self._clock.now() - position.last_claim_at, 0)
        return compute_rewards(
            elapsed=elapsed,
            base_apy=pool.base_apy,
            pool_multiplier=pool.utility_multiplier,
            utility_score=self._ledger.utility_score_of(asset_id),
            accumulated=position.accumulated_rewards,
            reward_unit=self._reward_unit,
        )

    async def claim_rewards(self, caller: Identity, asset_id: AssetId) -> int:
        async with self._lock:
            position = await self._require_staker(caller, asset_id, "claim_rewards")
            amount = self.calculate_rewards(asset_id)
            if amount == 0:
                raise NoRewardsAvailableError(f"No rewards accrued for asset {asset_id}")

            previous = position.model_copy()
            position.last_claim_at = self._clock.now()
            position.accumulated_rewards = 0
            try:
                await self._pay(position.staker, amount)
            except EvoLedgerError:
                self._positions[asset_id] = previous
                raise

        _logger.info("Paid %d rewards for asset %d to %s", amount, asset_id, caller)
        await self._bus.emit(Topic.REWARDS_CLAIMED, {
            "asset_id": asset_id,
            "staker": caller,
            "amount": amount,
        }, source=self.source)
        return amount

    async def unstake(self, caller: Identity, asset_id: AssetId) -> int:
        """Close the position, pay what accrued and return custody."""
        async with self._lock:
            position = await self._require_staker(caller, asset_id, "unstake")
            amount = self.calculate_rewards(asset_id)
            pool = self._require_pool(position.pool_id)
            new_total = checked_sub(pool.total_staked, 1, "total_staked")
            staker = position.staker
            old_total = pool.total_staked
            old_index = list(self._staked_by.get(staker, []))

            def rollback() -> None:
                self._positions[asset_id] = position
                pool.total_staked = old_total
                self._staked_by[staker] = old_index

            del self._positions[asset_id]
            pool.total_staked = new_total
            self._remove_from_index(staker, asset_id)

            try:
                await self._move_custody(self.identity, staker, asset_id)
            except EvoLedgerError:
                rollback()
                raise

            if amount > 0:
                try:
                    await self._pay(staker, amount)
                except EvoLedgerError:
                    await self._move_custody(staker, self.identity, asset_id)
                    rollback()
                    raise

        _logger.info("Asset %d unstaked by %s (rewards=%d)", asset_id, staker, amount)
        await self._bus.emit(Topic.TOKEN_UNSTAKED, {
            "asset_id": asset_id,
            "pool_id": position.pool_id,
            "staker": staker,
            "rewards": amount,
        }, source=self.source)
        return amount

    # ── Reads ────────────────────────────────────────────────────

    def get_pool(self, pool_id: PoolId) -> StakingPool:
        return self._require_pool(pool_id).model_copy()

    def get_position(self, asset_id: AssetId) -> StakingPosition:
        return self._require_position(asset_id).model_copy()

    def is_staked(self, asset_id: AssetId) -> bool:
        return asset_id in self._positions

    def staked_assets(self, staker: Identity) -> list[AssetId]:
        return list(self._staked_by.get(staker, []))

    @property
    def pool_count(self) -> int:
        return len(self._pools)

    # ── Internals ────────────────────────────────────────────────

    def _require_pool(self, pool_id: PoolId) -> StakingPool:
        pool = self._pools.get(pool_id)
        if pool is None:
            raise PoolNotFoundError(f"Pool {pool_id} not found")
        return pool

    def _require_position(self, asset_id: AssetId) -> StakingPosition:
        position = self._positions.get(asset_id)
        if position is None:
            raise NotStakedError(f"Asset {asset_id} is not staked")
        return position

    async def _require_staker(self, caller: Identity, asset_id: AssetId, action: str) -> StakingPosition:
        position = self._require_position(asset_id)
        if position.staker != caller:
            violation = f"'{caller}' did not stake asset {asset_id}"
            await self._guard.deny(caller, action, violation)
            raise NotOwnerError(violation)
        return position

    def _remove_from_index(self, staker: Identity, asset_id: AssetId) -> None:
        """Swap-and-pop removal; order of the index is not preserved."""
        assets = self._staked_by.get(staker, [])
        i = assets.index(asset_id)
        assets[i] = assets[-1]
        assets.pop()

    async def _move_custody(self, sender: Identity, recipient: Identity, asset_id: AssetId) -> None:
        try:
            await self._registry.transfer(sender, recipient, asset_id)
        except CustodyTransferError:
            raise
        except Exception as e:
            raise CustodyTransferError(
                f"Custody transfer of asset {asset_id} to '{recipient}' failed: {e}"
            ) from e

    async def _pay(self, recipient: Identity, amount: int) -> None:
        try:
            await self._token.transfer(recipient, amount)
        except PayoutFailedError:
            raise
        except Exception as e:
            raise PayoutFailedError(f"Payout of {amount} to '{recipient}' failed: {e}") from e
