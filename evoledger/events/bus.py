"""Event Bus — engine notifications fanned out to topic subscribers.

Topics are dotted, "asset.*" covers "asset.minted" and
"asset.utility_updated", and "*" covers everything. Delivery is
informational: a failing subscriber is logged and never fails the engine
call that emitted the notification.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from evoledger.types import AssetId, new_id

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Topic(str, Enum):
    NFT_MINTED = "asset.minted"
    UTILITY_SCORE_UPDATED = "asset.utility_updated"
    INTERACTION_RECORDED = "asset.interaction_recorded"
    EVOLUTION_REQUESTED = "evolution.requested"
    EVOLUTION_COMPLETED = "evolution.completed"
    PERSONALITY_EVOLVED = "personality.evolved"
    INTERACTION_LEARNED = "personality.interaction_learned"
    SOCIAL_CONNECTION_FORMED = "personality.social_connection"
    MEMORY_STORED = "personality.memory_stored"
    POOL_CREATED = "staking.pool_created"
    TOKEN_STAKED = "staking.staked"
    TOKEN_UNSTAKED = "staking.unstaked"
    REWARDS_CLAIMED = "staking.rewards_claimed"


class Event(BaseModel):
    """One notification as delivered to subscribers."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def asset_id(self) -> AssetId | None:
        return self.data.get("asset_id")


class EventBus:
    """Async fan-out keyed by topic patterns, with a bounded replay log."""

    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._log: deque[Event] = deque(maxlen=history_limit)
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: str | Topic, handler: EventHandler) -> None:
        self._subscriptions.append((_topic_value(pattern), handler))

    def unsubscribe(self, pattern: str | Topic, handler: EventHandler) -> None:
        entry = (_topic_value(pattern), handler)
        if entry in self._subscriptions:
            self._subscriptions.remove(entry)

    async def emit(self, topic: str | Topic, data: dict | None = None, source: str = "") -> Event:
        """Log the event, then await every matching subscriber concurrently."""
        event = Event(topic=_topic_value(topic), data=data or {}, source=source)
        async with self._lock:
            self._log.append(event)

        handlers = [h for pattern, h in self._subscriptions if fnmatch.fnmatch(event.topic, pattern)]
        if not handlers:
            return event

        outcomes = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                _logger.warning("Subscriber for '%s' failed: %s", event.topic, outcome)
        return event

    def history(
        self,
        topic_filter: str | Topic = "*",
        limit: int = 50,
        asset_id: AssetId | None = None,
    ) -> list[Event]:
        """Recent events, newest first."""
        pattern = _topic_value(topic_filter)
        matched = [
            e for e in self._log
            if fnmatch.fnmatch(e.topic, pattern)
            and (asset_id is None or e.asset_id == asset_id)
        ]
        return matched[::-1][:limit]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def topics(self) -> list[str]:
        return sorted({e.topic for e in self._log})


def _topic_value(topic: str | Topic) -> str:
    return topic.value if isinstance(topic, Topic) else topic
