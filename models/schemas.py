"""
Boundary schemas — every payload crossing the engine's edge is validated here
before any field is used. Unknown keys are rejected, money must be an int.

External ledger events are a tagged union on ``event_type``.
"""
from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, TypeAdapter, model_validator

from models.types import Side, TradeType

Probability = Annotated[float, Field(ge=0.0, le=1.0)]
MicroAmount = Annotated[StrictInt, Field(ge=0)]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# ============================================================================
# REQUESTS
# ============================================================================

class SubmitBeliefRequest(_Strict):
    agent_id: StrictStr = Field(min_length=1)
    belief_id: StrictStr = Field(min_length=1)
    belief_value: Probability
    meta_prediction: Probability
    epoch: Annotated[StrictInt, Field(ge=0)]


class RecordTradeRequest(_Strict):
    agent_id: StrictStr = Field(min_length=1)
    pool_id: StrictStr = Field(min_length=1)
    side: Side
    trade_type: TradeType = TradeType.BUY
    token_amount: Optional[MicroAmount] = None
    notional: Optional[MicroAmount] = None
    supplied_skim: MicroAmount = 0
    belief: Optional[Probability] = None
    meta_prediction: Optional[Probability] = None
    tx_signature: Optional[StrictStr] = None

    @model_validator(mode="after")
    def _amount_present(self) -> "RecordTradeRequest":
        if self.token_amount is None and self.notional is None:
            raise ValueError("one of token_amount or notional is required")
        if (self.belief is None) != (self.meta_prediction is None):
            raise ValueError("belief and meta_prediction must be supplied together")
        return self


class SettleEpochRequest(_Strict):
    belief_id: StrictStr = Field(min_length=1)
    epoch: Optional[Annotated[StrictInt, Field(ge=0)]] = None


# ============================================================================
# RESPONSES
# ============================================================================

class SubmitBeliefResponse(_Strict):
    submission_id: str


class RecordTradeResponse(_Strict):
    trade_id: str
    new_balance: int
    new_lock: int
    skim_applied: int
    duplicate: bool = False


class RebaseStatusResponse(_Strict):
    can_settle: bool
    unaccounted_submissions: int
    min_required: int
    cooldown_remaining_seconds: int
    current_epoch: int
    reason: str


class StakeDeltaModel(_Strict):
    agent_id: str
    stake_before: int
    stake_after: int
    delta: int
    information_score: float


class SettleEpochResponse(_Strict):
    belief_id: str
    epoch: int
    next_epoch: int
    new_aggregate: float
    certainty: float
    bd_score_ppm: int
    aggregation_method: str
    redistribution_occurred: bool
    stake_deltas: list[StakeDeltaModel]


class ErrorResponse(_Strict):
    error: str
    reason: str
    message: str
    shortfall: Optional[int] = None
    cooldown_remaining_seconds: Optional[int] = None


# ============================================================================
# EXTERNAL LEDGER EVENTS
# ============================================================================

class _LedgerEventBase(_Strict):
    tx_signature: StrictStr = Field(min_length=1)
    block_time: Optional[StrictInt] = None


class TradeEvent(_LedgerEventBase):
    event_type: Literal["trade"]
    agent_id: StrictStr
    pool_id: StrictStr
    side: Side
    trade_type: TradeType
    token_amount: MicroAmount
    notional: MicroAmount
    skim_amount: MicroAmount = 0


class SettlementEvent(_LedgerEventBase):
    event_type: Literal["settlement"]
    pool_id: StrictStr
    epoch: Annotated[StrictInt, Field(ge=0)]
    bd_score_ppm: Annotated[StrictInt, Field(ge=0, le=1_000_000)]


class DepositEvent(_LedgerEventBase):
    event_type: Literal["deposit"]
    agent_id: StrictStr
    amount: MicroAmount


class WithdrawEvent(_LedgerEventBase):
    event_type: Literal["withdraw"]
    agent_id: StrictStr
    amount: MicroAmount


LedgerEvent = Annotated[
    Union[TradeEvent, SettlementEvent, DepositEvent, WithdrawEvent],
    Field(discriminator="event_type"),
]

_ledger_event_adapter = TypeAdapter(LedgerEvent)


def parse_ledger_event(raw: dict):
    """Validate one raw event dict. Raises pydantic.ValidationError on unknown shapes."""
    return _ledger_event_adapter.validate_python(raw)
