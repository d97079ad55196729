"""Randomness Provider — request now, fulfill later.

A consumer registers a callback with ``set_consumer``. ``request_random_words``
returns a request id immediately; the words arrive later through the
callback, from a separate task, exactly once per id.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from evoledger.exceptions import InvalidArgumentError, RequestNotFoundError
from evoledger.types import RequestId, new_id

_logger = logging.getLogger(__name__)

FulfillmentCallback = Callable[[RequestId, list[int]], Awaitable[None]]


class RandomnessProvider(ABC):
    def __init__(self) -> None:
        self._consumer: FulfillmentCallback | None = None

    def set_consumer(self, callback: FulfillmentCallback) -> None:
        self._consumer = callback

    @abstractmethod
    async def request_random_words(self, num_words: int) -> RequestId: ...


class LocalRandomnessProvider(RandomnessProvider):
    """In-process provider backed by ``secrets``.

    With ``auto_fulfill`` on, each request is delivered from a background
    task after ``delay_seconds``. With it off, requests wait in ``pending``
    until ``fulfill`` is called, which lets tests choose the words.
    """

    def __init__(self, auto_fulfill: bool = True, delay_seconds: float = 0.0) -> None:
        super().__init__()
        self._auto_fulfill = auto_fulfill
        self._delay = delay_seconds
        self._pending: dict[RequestId, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self.request_count = 0

    @property
    def pending(self) -> list[RequestId]:
        return list(self._pending)

    async def request_random_words(self, num_words: int) -> RequestId:
        if num_words <= 0:
            raise InvalidArgumentError("num_words must be positive")
        request_id = new_id()
        self._pending[request_id] = num_words
        self.request_count += 1

        if self._auto_fulfill:
            task = asyncio.create_task(
                self._deliver_later(request_id), name=f"randomness-{request_id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return request_id

    async def fulfill(self, request_id: RequestId, words: list[int] | None = None) -> None:
        """Deliver words for a pending request to the consumer."""
        num_words = self._pending.pop(request_id, None)
        if num_words is None:
            raise RequestNotFoundError(f"No pending randomness request {request_id}")
        if words is None:
            words = [secrets.randbits(256) for _ in range(num_words)]
        if self._consumer is None:
            _logger.warning("Dropping randomness for %s: no consumer registered", request_id)
            return
        await self._consumer(request_id, words)

    async def drain(self) -> None:
        """Wait for all in-flight auto deliveries to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver_later(self, request_id: RequestId) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        try:
            await self.fulfill(request_id)
        except Exception as e:
            _logger.warning("Randomness delivery for %s failed: %s", request_id, e)
