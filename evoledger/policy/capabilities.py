"""Capability checks — who may perform privileged engine actions.

Every privileged operation declares the capability it needs. The engines
ask an ``Authorization`` service before mutating anything; the
``CapabilityGuard`` turns a denial into an ``UnauthorizedError`` and
records it in the audit trail.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict

from evoledger.exceptions import InvalidArgumentError, UnauthorizedError
from evoledger.policy.audit import AuditTrail
from evoledger.types import Capability, Identity, is_zero_identity

_logger = logging.getLogger(__name__)


class Authorization(ABC):
    @abstractmethod
    def has_capability(self, caller: Identity, capability: Capability) -> bool: ...


class RoleRegistry(Authorization):
    """In-memory capability grants.

    The identity passed at construction receives ADMIN. Only ADMIN holders
    may grant or revoke. ADMIN does not imply any other capability.
    """

    def __init__(self, admin: Identity) -> None:
        if is_zero_identity(admin):
            raise InvalidArgumentError("admin identity must not be empty")
        self._grants: dict[Identity, set[Capability]] = defaultdict(set)
        self._grants[admin].add(Capability.ADMIN)

    def has_capability(self, caller: Identity, capability: Capability) -> bool:
        return capability in self._grants.get(caller, set())

    def grant(self, caller: Identity, grantee: Identity, capability: Capability) -> None:
        self._require_admin(caller)
        if is_zero_identity(grantee):
            raise InvalidArgumentError("grantee identity must not be empty")
        self._grants[grantee].add(capability)
        _logger.info("Granted %s to %s", capability.value, grantee)

    def revoke(self, caller: Identity, grantee: Identity, capability: Capability) -> None:
        self._require_admin(caller)
        self._grants.get(grantee, set()).discard(capability)
        _logger.info("Revoked %s from %s", capability.value, grantee)

    def capabilities_of(self, identity: Identity) -> set[Capability]:
        return set(self._grants.get(identity, set()))

    def _require_admin(self, caller: Identity) -> None:
        if not self.has_capability(caller, Capability.ADMIN):
            raise UnauthorizedError(f"'{caller}' may not manage capabilities")


class CapabilityGuard:
    """Enforces capabilities on engine actions and audits the outcome."""

    def __init__(self, authorization: Authorization, audit: AuditTrail | None = None) -> None:
        self._authorization = authorization
        self._audit = audit

    @property
    def authorization(self) -> Authorization:
        return self._authorization

    @property
    def audit(self) -> AuditTrail | None:
        return self._audit

    def allows(self, caller: Identity, capability: Capability) -> bool:
        return self._authorization.has_capability(caller, capability)

    async def require(self, caller: Identity, capability: Capability, action: str) -> None:
        """Raise ``UnauthorizedError`` unless ``caller`` holds ``capability``."""
        if self.allows(caller, capability):
            return
        violation = f"'{caller}' lacks {capability.value} for {action}"
        if self._audit is not None:
            await self._audit.log_violation(actor=caller, action=action, violation=violation)
        raise UnauthorizedError(violation)

    async def record(self, actor: Identity, action: str, detail: str = "", asset_id: int | None = None) -> None:
        if self._audit is not None:
            await self._audit.log_action(actor=actor, action=action, detail=detail, asset_id=asset_id)

    async def deny(self, actor: Identity, action: str, violation: str) -> None:
        """Audit an ownership denial raised by the caller."""
        if self._audit is not None:
            await self._audit.log_violation(actor=actor, action=action, violation=violation)
