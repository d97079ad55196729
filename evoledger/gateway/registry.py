"""Asset Registry — the single source of truth for ownership and custody."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from evoledger.exceptions import (
    AssetNotFoundError,
    InvalidArgumentError,
    UnauthorizedError,
)
from evoledger.types import AssetId, Identity, is_zero_identity

_logger = logging.getLogger(__name__)


class AssetRegistry(ABC):
    @abstractmethod
    async def mint(self, owner: Identity) -> AssetId: ...

    @abstractmethod
    def owner_of(self, asset_id: AssetId) -> Identity: ...

    @abstractmethod
    async def transfer(self, sender: Identity, recipient: Identity, asset_id: AssetId) -> None: ...

    def exists(self, asset_id: AssetId) -> bool:
        try:
            self.owner_of(asset_id)
        except AssetNotFoundError:
            return False
        return True


class InMemoryAssetRegistry(AssetRegistry):
    """Sequential asset ids starting at 1, owners kept in a dict."""

    def __init__(self) -> None:
        self._owners: dict[AssetId, Identity] = {}
        self._next_id: AssetId = 1
        self._lock = asyncio.Lock()

    async def mint(self, owner: Identity) -> AssetId:
        if is_zero_identity(owner):
            raise InvalidArgumentError("cannot mint to the zero identity")
        async with self._lock:
            asset_id = self._next_id
            self._next_id += 1
            self._owners[asset_id] = owner
        return asset_id

    def owner_of(self, asset_id: AssetId) -> Identity:
        owner = self._owners.get(asset_id)
        if owner is None:
            raise AssetNotFoundError(f"Asset {asset_id} not found")
        return owner

    async def transfer(self, sender: Identity, recipient: Identity, asset_id: AssetId) -> None:
        if is_zero_identity(recipient):
            raise InvalidArgumentError("cannot transfer to the zero identity")
        async with self._lock:
            owner = self.owner_of(asset_id)
            if owner != sender:
                raise UnauthorizedError(
                    f"'{sender}' cannot transfer asset {asset_id} owned by '{owner}'"
                )
            self._owners[asset_id] = recipient
        _logger.debug("Asset %d moved %s -> %s", asset_id, sender, recipient)

    def assets_of(self, owner: Identity) -> list[AssetId]:
        return sorted(a for a, o in self._owners.items() if o == owner)

    @property
    def total_supply(self) -> int:
        return len(self._owners)
