"""Shared test fixtures — a fully wired runtime on a manual clock."""

from __future__ import annotations

import pytest
import pytest_asyncio

from evoledger.config import EvoLedgerSettings
from evoledger.events.bus import Event, EventBus
from evoledger.gateway.oracle import StaticOracleFeed
from evoledger.gateway.randomness import LocalRandomnessProvider
from evoledger.gateway.token import InMemoryTokenLedger
from evoledger.runtime import EngineRuntime
from evoledger.types import ManualClock


class EventRecorder:
    """Collects every event emitted on a bus. No filtering, no delivery delay."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[Event] = []
        bus.subscribe("*", self._on_event)

    async def _on_event(self, event: Event) -> None:
        self.events.append(event)

    def topics(self) -> list[str]:
        return [e.topic for e in self.events]

    def of(self, topic) -> list[Event]:
        value = getattr(topic, "value", topic)
        return [e for e in self.events if e.topic == value]


def build_runtime(
    config: EvoLedgerSettings | None = None,
    token_ledger: InMemoryTokenLedger | None = None,
    auto_fulfill: bool = False,
    oracle: StaticOracleFeed | None = None,
    **kwargs,
) -> EngineRuntime:
    return EngineRuntime(
        config=config or EvoLedgerSettings(),
        clock=ManualClock(),
        randomness=LocalRandomnessProvider(auto_fulfill=auto_fulfill),
        oracle=oracle or StaticOracleFeed(),
        token_ledger=token_ledger or InMemoryTokenLedger(),
        **kwargs,
    )


@pytest.fixture
def runtime() -> EngineRuntime:
    return build_runtime()


@pytest.fixture
def clock(runtime) -> ManualClock:
    return runtime.clock


@pytest.fixture
def recorder(runtime) -> EventRecorder:
    return EventRecorder(runtime.event_bus)


@pytest_asyncio.fixture
async def asset(runtime) -> int:
    """An asset owned by alice with an initialized personality."""
    return await runtime.mint_with_personality(
        "admin", "alice", [50, 60, 70, 80, 90], personality_hash="hash-a",
    )
