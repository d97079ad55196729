"""Tests for the event bus."""

import pytest

from evoledger.events.bus import Event, EventBus, Topic


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("asset.minted", handler)
    await bus.emit(Topic.NFT_MINTED, {"asset_id": 1})

    assert len(received) == 1
    assert received[0].topic == "asset.minted"
    assert received[0].data["asset_id"] == 1


@pytest.mark.asyncio
async def test_subscribe_with_topic_enum():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe(Topic.REWARDS_CLAIMED, handler)
    await bus.emit("staking.rewards_claimed", {"amount": 5})

    assert [e.data["amount"] for e in received] == [5]


@pytest.mark.asyncio
async def test_wildcard_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("staking.*", handler)
    await bus.emit(Topic.TOKEN_STAKED)
    await bus.emit(Topic.TOKEN_UNSTAKED)
    await bus.emit(Topic.NFT_MINTED)  # different family

    assert len(received) == 2


@pytest.mark.asyncio
async def test_star_matches_all():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("*", handler)
    for topic in (Topic.NFT_MINTED, Topic.EVOLUTION_COMPLETED, Topic.MEMORY_STORED):
        await bus.emit(topic)

    assert len(received) == 3


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("evolution.requested", handler)
    await bus.emit(Topic.EVOLUTION_REQUESTED)
    bus.unsubscribe("evolution.requested", handler)
    await bus.emit(Topic.EVOLUTION_REQUESTED)

    assert len(received) == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_fail_emitter():
    bus = EventBus()
    received = []

    async def broken(event: Event):
        raise RuntimeError("boom")

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("*", broken)
    bus.subscribe("*", handler)
    event = await bus.emit(Topic.POOL_CREATED, {"pool_id": 1})

    assert event.data["pool_id"] == 1
    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_newest_first():
    bus = EventBus()
    await bus.emit(Topic.NFT_MINTED, {"asset_id": 1})
    await bus.emit(Topic.NFT_MINTED, {"asset_id": 2})
    await bus.emit(Topic.TOKEN_STAKED, {"asset_id": 1})

    assert len(bus.history()) == 3
    minted = bus.history(topic_filter="asset.*")
    assert [e.data["asset_id"] for e in minted] == [2, 1]


@pytest.mark.asyncio
async def test_history_limit():
    bus = EventBus(history_limit=5)
    for i in range(10):
        await bus.emit(Topic.INTERACTION_RECORDED, {"i": i})

    history = bus.history(limit=50)
    assert len(history) == 5
    assert history[0].data["i"] == 9


@pytest.mark.asyncio
async def test_emit_returns_event():
    bus = EventBus()
    event = await bus.emit(Topic.EVOLUTION_COMPLETED, {"new_stage": 2}, source="evolution")

    assert event.topic == "evolution.completed"
    assert event.source == "evolution"
    assert event.id


@pytest.mark.asyncio
async def test_subscriber_count_and_topics():
    bus = EventBus()

    async def h(e):
        pass

    bus.subscribe("asset.*", h)
    bus.subscribe(Topic.TOKEN_STAKED, h)
    assert bus.subscriber_count == 2

    await bus.emit(Topic.NFT_MINTED)
    await bus.emit(Topic.NFT_MINTED)
    assert bus.topics() == ["asset.minted"]


@pytest.mark.asyncio
async def test_history_by_asset():
    bus = EventBus()
    await bus.emit(Topic.NFT_MINTED, {"asset_id": 1})
    await bus.emit(Topic.NFT_MINTED, {"asset_id": 2})
    await bus.emit(Topic.POOL_CREATED, {"pool_id": 1})
    await bus.emit(Topic.TOKEN_STAKED, {"asset_id": 1})

    events = bus.history(asset_id=1)
    assert [e.topic for e in events] == ["staking.staked", "asset.minted"]
