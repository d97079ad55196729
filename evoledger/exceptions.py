"""Custom exception hierarchy for evoledger."""


class EvoLedgerError(Exception):
    """Base for all evoledger errors."""


# ── Not found ────────────────────────────────────────────────────────────────


class NotFoundError(EvoLedgerError):
    """A referenced asset, pool, request or record does not exist."""


class AssetNotFoundError(NotFoundError):
    """No asset with the given ID exists."""


class PoolNotFoundError(NotFoundError):
    """No staking pool with the given ID exists."""


class RequestNotFoundError(NotFoundError):
    """No evolution request with the given ID exists."""


class PersonalityNotFoundError(NotFoundError):
    """The asset has no initialized personality."""


# ── Authorization & arguments ────────────────────────────────────────────────


class UnauthorizedError(EvoLedgerError):
    """Caller does not hold the required capability."""


class InvalidArgumentError(EvoLedgerError):
    """Malformed input: zero identity, out-of-range value, bad configuration."""


class ArithmeticOverflowError(InvalidArgumentError):
    """A checked counter left the unsigned 256-bit range."""


# ── Preconditions ────────────────────────────────────────────────────────────


class PreconditionFailedError(EvoLedgerError):
    """An eligibility, requirement or ownership check failed."""


class EvolutionDisabledError(PreconditionFailedError):
    """The asset owner has disabled evolution."""


class RequirementsNotMetError(PreconditionFailedError):
    """The time or XP gate of the current stage is not satisfied."""


class NotEligibleError(PreconditionFailedError):
    """The asset cannot evolve right now."""


class NoEvolutionPathError(PreconditionFailedError):
    """No evolution path is configured for the stage."""


class NotOwnerError(PreconditionFailedError):
    """Caller does not own the asset (or did not stake it)."""


class PoolInactiveError(PreconditionFailedError):
    """The pool does not accept new stakes."""


class NotStakedError(PreconditionFailedError):
    """The asset has no active staking position."""


class NoRewardsAvailableError(PreconditionFailedError):
    """Nothing has accrued on the position yet."""


# ── Duplicates ───────────────────────────────────────────────────────────────


class AlreadyProcessedError(EvoLedgerError):
    """The operation was already applied once."""


class AlreadyFulfilledError(AlreadyProcessedError):
    """The evolution request was already fulfilled."""


class AlreadyStakedError(AlreadyProcessedError):
    """The asset already has an active staking position."""


class AlreadyInitializedError(AlreadyProcessedError):
    """The asset's personality was already initialized."""


# ── External collaborators ───────────────────────────────────────────────────


class ExternalDependencyUnavailableError(EvoLedgerError):
    """An external collaborator failed or timed out."""


class OracleUnavailableError(ExternalDependencyUnavailableError):
    """The oracle feed has no value for the series."""


class PayoutFailedError(ExternalDependencyUnavailableError):
    """The token ledger refused or failed a payout."""


class CustodyTransferError(ExternalDependencyUnavailableError):
    """The asset registry refused a custody transfer."""
