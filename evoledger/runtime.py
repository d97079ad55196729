"""Engine runtime — wires collaborators and engines into one object."""

from __future__ import annotations

import hashlib
import logging

from evoledger.config import EvoLedgerSettings, settings as default_settings
from evoledger.events.bus import EventBus
from evoledger.evolution.state_machine import EvolutionStateMachine
from evoledger.gateway.oracle import OracleFeed, StaticOracleFeed
from evoledger.gateway.randomness import LocalRandomnessProvider, RandomnessProvider
from evoledger.gateway.registry import AssetRegistry, InMemoryAssetRegistry
from evoledger.gateway.token import InMemoryTokenLedger, TokenLedger
from evoledger.ledger.assets import EvolvingAssetLedger
from evoledger.personality.engine import PersonalityEngine
from evoledger.policy.audit import AuditTrail
from evoledger.policy.capabilities import CapabilityGuard, RoleRegistry
from evoledger.staking.engine import StakingEngine
from evoledger.types import AssetId, Capability, Clock, Identity, StageAdvanceMode

_logger = logging.getLogger(__name__)

OPERATOR_CAPABILITIES = (
    Capability.MINTER,
    Capability.STAKING_MANAGER,
    Capability.PERSONALITY_MANAGER,
)


class EngineRuntime:
    """Holds every subsystem instance.

    Collaborators default to the in-memory implementations. The admin
    identity receives ADMIN plus the operator capabilities; the evolution
    state machine receives what it needs to apply outcomes.
    """

    def __init__(
        self,
        config: EvoLedgerSettings | None = None,
        admin: Identity = "admin",
        clock: Clock | None = None,
        registry: AssetRegistry | None = None,
        randomness: RandomnessProvider | None = None,
        oracle: OracleFeed | None = None,
        token_ledger: TokenLedger | None = None,
    ) -> None:
        self.config = config or default_settings
        self.admin = admin
        self.clock = clock or Clock()

        # Safety & observability
        self.event_bus = EventBus(history_limit=self.config.event_history_limit)
        self.audit_trail = AuditTrail(self.config.audit_db_path)
        self.roles = RoleRegistry(admin)
        self.guard = CapabilityGuard(self.roles, self.audit_trail)

        # External collaborators
        self.registry = registry or InMemoryAssetRegistry()
        self.randomness = randomness or LocalRandomnessProvider(
            delay_seconds=self.config.randomness_delay_seconds,
        )
        self.oracle = oracle or StaticOracleFeed()
        self.token_ledger = token_ledger or InMemoryTokenLedger()

        # Engines
        self.ledger = EvolvingAssetLedger(self.registry, self.guard, self.event_bus, self.clock)
        self.personality = PersonalityEngine(self.guard, self.event_bus)
        self.evolution = EvolutionStateMachine(
            ledger=self.ledger,
            personality=self.personality,
            registry=self.registry,
            randomness=self.randomness,
            oracle=self.oracle,
            guard=self.guard,
            event_bus=self.event_bus,
            clock=self.clock,
            stage_advance_mode=StageAdvanceMode(self.config.stage_advance_mode),
            trait_count=self.config.trait_count,
            randomness_words=self.config.randomness_words,
            weather_series=self.config.weather_series,
            oracle_timeout=self.config.oracle_timeout_seconds,
        )
        self.staking = StakingEngine(
            ledger=self.ledger,
            registry=self.registry,
            token_ledger=self.token_ledger,
            guard=self.guard,
            event_bus=self.event_bus,
            clock=self.clock,
            reward_unit=self.config.reward_unit,
        )

        for capability in OPERATOR_CAPABILITIES:
            self.roles.grant(admin, admin, capability)
        self.roles.grant(admin, self.evolution.identity, Capability.EVOLUTION_MANAGER)
        self.roles.grant(admin, self.evolution.identity, Capability.PERSONALITY_MANAGER)

    async def initialize(self) -> None:
        await self.audit_trail.initialize()

    async def close(self) -> None:
        if isinstance(self.randomness, LocalRandomnessProvider):
            await self.randomness.drain()
        await self.audit_trail.close()

    async def mint_with_personality(
        self,
        caller: Identity,
        owner: Identity,
        traits: list[int],
        personality_hash: str | None = None,
        learning_rate: int | None = None,
    ) -> AssetId:
        """Mint an asset and seed its personality with the same traits.

        The personality seed is checked before minting, so a refused seed
        leaves no asset behind.
        """
        await self.guard.require(caller, Capability.PERSONALITY_MANAGER, "mint_with_personality")
        if learning_rate is None:
            learning_rate = self.config.default_learning_rate
        self.personality.validate_seed(traits, learning_rate)
        if personality_hash is None:
            seed = f"{owner}:{','.join(map(str, traits))}:{self.ledger.asset_count}"
            personality_hash = hashlib.sha256(seed.encode()).hexdigest()
        asset_id = await self.ledger.mint(caller, owner, traits, personality_hash)
        await self.personality.initialize_personality(caller, asset_id, traits, learning_rate)
        return asset_id
