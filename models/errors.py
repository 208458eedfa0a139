"""
Exception hierarchy for the engine.

Each error carries a stable ``reason`` from models.reasons so callers and
tests can branch on exact values rather than message text.
"""
from __future__ import annotations

from typing import Optional

from models.reasons import (
    REASON_DECOMPOSITION_FAILED,
    REASON_INSUFFICIENT_COLLATERAL,
    REASON_INVALID_PROBABILITY,
    REASON_INVARIANT_VIOLATION,
    REASON_LEDGER_UNAVAILABLE,
    REASON_MISSING_WEIGHT,
    REASON_NUMERICAL_OVERFLOW,
    REASON_SETTLEMENT_IN_PROGRESS,
    REASON_SKIM_CAP_EXCEEDED,
)


class ProtocolError(Exception):
    """Base class for every rejection the engine raises."""

    reason: str = "protocol_error"

    def __init__(self, message: str = "", reason: Optional[str] = None) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(message or self.reason)

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "reason": self.reason, "message": str(self)}


class ValidationError(ProtocolError):
    """Malformed input rejected before any mutation."""

    reason = "validation_error"


class MissingWeight(ValidationError):
    """A contributing agent has no entry in the supplied weight map."""

    reason = REASON_MISSING_WEIGHT

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Missing weight for agent {agent_id}")


class NotFound(ProtocolError):
    reason = "not_found"


class InsufficientCollateral(ProtocolError):
    """Supplied skim does not cover the required lock delta. Recoverable by topping up."""

    reason = REASON_INSUFFICIENT_COLLATERAL

    def __init__(self, shortfall: int, required_skim: int, supplied_skim: int) -> None:
        self.shortfall = shortfall
        self.required_skim = required_skim
        self.supplied_skim = supplied_skim
        super().__init__(
            f"Insufficient skim: required={required_skim} supplied={supplied_skim} shortfall={shortfall}"
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(shortfall=self.shortfall, required_skim=self.required_skim, supplied_skim=self.supplied_skim)
        return d


class CollateralCapExceeded(ProtocolError):
    """
    The agent is so far underwater that covering the deficit would push the
    skim past max_skim_rate. The caller must deposit or close positions.
    """

    reason = REASON_SKIM_CAP_EXCEEDED

    def __init__(self, deficit: int, skim_rate: float, max_skim_rate: float, positions: Optional[list] = None) -> None:
        self.deficit = deficit
        self.skim_rate = skim_rate
        self.max_skim_rate = max_skim_rate
        self.positions = positions or []
        super().__init__(
            f"Required skim rate {skim_rate:.2%} exceeds cap {max_skim_rate:.2%} (deficit={deficit})"
        )

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(
            deficit=self.deficit,
            skim_rate=self.skim_rate,
            max_skim_rate=self.max_skim_rate,
            positions=[
                {"pool_id": p.pool_id, "side": p.side.value, "token_balance": p.token_balance, "belief_lock": p.belief_lock}
                for p in self.positions
            ],
        )
        return d


class InvariantViolation(ProtocolError):
    """A commit would leave total_stake below aggregate locks. Aborts the transaction."""

    reason = REASON_INVARIANT_VIOLATION


class NotEligible(ProtocolError):
    """Settlement refused; carries the remaining cooldown when that is the cause."""

    reason = "not_eligible"

    def __init__(self, message: str = "", reason: Optional[str] = None, cooldown_remaining: int = 0) -> None:
        self.cooldown_remaining = cooldown_remaining
        super().__init__(message, reason)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["cooldown_remaining_seconds"] = self.cooldown_remaining
        return d


class SettlementInProgress(NotEligible):
    reason = REASON_SETTLEMENT_IN_PROGRESS


class NumericalOverflow(ProtocolError):
    """Fixed-point intermediate left the 256-bit range."""

    reason = REASON_NUMERICAL_OVERFLOW


class DecompositionFailed(ProtocolError):
    """The local-expectations fit for an epoch is unusable; callers fall back to the weighted mean."""

    reason = REASON_DECOMPOSITION_FAILED


class ExternalLedgerError(ProtocolError):
    """External ledger call failed. Safe to retry; the mirror was not mutated."""

    reason = REASON_LEDGER_UNAVAILABLE


def require_probability(label: str, value: float) -> float:
    """Reject values outside [0, 1] (and NaN) before they reach any state."""
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{label} must be in [0, 1], got {value!r}", REASON_INVALID_PROBABILITY)
    return float(value)
