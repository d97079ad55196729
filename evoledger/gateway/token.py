"""Token Ledger — pays reward credits out to stakers."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict

from evoledger.exceptions import InvalidArgumentError, PayoutFailedError
from evoledger.types import Identity, is_zero_identity


class TokenLedger(ABC):
    @abstractmethod
    async def transfer(self, recipient: Identity, amount: int) -> None: ...


class InMemoryTokenLedger(TokenLedger):
    """Credits balances from a treasury reserve.

    ``reserve=None`` means an unlimited treasury. A payout larger than the
    remaining reserve fails without moving anything.
    """

    def __init__(self, reserve: int | None = None) -> None:
        self._reserve = reserve
        self._balances: dict[Identity, int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self.payouts: list[tuple[Identity, int]] = []

    @property
    def reserve(self) -> int | None:
        return self._reserve

    def balance_of(self, identity: Identity) -> int:
        return self._balances.get(identity, 0)

    async def transfer(self, recipient: Identity, amount: int) -> None:
        if is_zero_identity(recipient):
            raise InvalidArgumentError("cannot pay the zero identity")
        if amount < 0:
            raise InvalidArgumentError("amount must be non-negative")
        async with self._lock:
            if self._reserve is not None:
                if amount > self._reserve:
                    raise PayoutFailedError(
                        f"Treasury reserve {self._reserve} cannot cover {amount}"
                    )
                self._reserve -= amount
            self._balances[recipient] += amount
            self.payouts.append((recipient, amount))
