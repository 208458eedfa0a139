"""
Core data models for the belief-consensus market engine.
Money and token quantities are integers in micro-units (6 decimals).
Probabilities are floats in [0, 1].
"""
from dataclasses import dataclass, field, asdict
from typing import Optional
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class Side(str, Enum):
    """Pool side an agent can hold."""
    LONG = "LONG"
    SHORT = "SHORT"


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class BeliefStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class EpochState(str, Enum):
    """Per-belief settlement state machine."""
    ACCEPTING_SUBMISSIONS = "accepting_submissions"
    ELIGIBLE_FOR_SETTLEMENT = "eligible_for_settlement"
    SETTLING = "settling"
    SETTLED = "settled"


class SettlementStatus(str, Enum):
    """Outbox status for a settlement instruction bound for the external ledger."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AggregationMethod(str, Enum):
    """How the canonical epoch aggregate was produced."""
    NAIVE = "naive"
    DECOMPOSITION = "decomposition"


# ============================================================================
# LEDGER ENTITIES
# ============================================================================

@dataclass
class Agent:
    agent_id: str
    total_stake: int = 0
    active_position_count: int = 0


@dataclass
class Position:
    """
    Holding of one side of one pool by one agent.

    token_balance and belief_lock reach zero together.
    """
    agent_id: str
    pool_id: str
    side: Side
    token_balance: int = 0
    belief_lock: int = 0
    cost_basis: int = 0
    last_buy_amount: int = 0

    @property
    def is_open(self) -> bool:
        return self.token_balance > 0


@dataclass
class Belief:
    belief_id: str
    creator: str
    pool_id: Optional[str] = None
    status: BeliefStatus = BeliefStatus.ACTIVE
    epoch_state: EpochState = EpochState.ACCEPTING_SUBMISSIONS
    current_epoch: int = 0
    expiration_epoch: int = 0
    previous_aggregate: float = 0.5
    previous_disagreement_entropy: float = 0.0
    certainty: float = 0.0
    disagreement_entropy: float = 0.0
    last_processed_epoch: Optional[int] = None
    settling_deadline: Optional[float] = None


@dataclass
class BeliefSubmission:
    submission_id: str
    agent_id: str
    belief_id: str
    epoch: int
    belief: float
    meta_prediction: float
    is_active: bool = True


@dataclass
class Pool:
    """
    Dual-reserve pool mirror. Fixed-point fields are Python ints (Q96).
    """
    pool_id: str
    belief_id: str
    r_long: int = 0
    r_short: int = 0
    supply_long: int = 0
    supply_short: int = 0
    k_long_x96: int = 0
    k_short_x96: int = 0
    sqrt_price_long_x96: int = 0
    sqrt_price_short_x96: int = 0
    last_settlement_epoch: int = 0
    last_settled_at: Optional[float] = None
    min_settle_interval: Optional[int] = None  # None -> live config value

    @property
    def vault_balance(self) -> int:
        return self.r_long + self.r_short


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class LockProjection:
    """Collateral the ledger requires before a trade may commit."""
    lock_before: int
    lock_after: int
    underwater_deficit: int
    required_skim: int
    skim_rate: float  # required_skim / notional, presentation only

    @property
    def lock_delta(self) -> int:
        return self.lock_after - self.lock_before


@dataclass
class UnderwaterCheck:
    agent_id: str
    total_stake: int
    total_locks: int

    @property
    def deficit(self) -> int:
        return max(0, self.total_locks - self.total_stake)

    @property
    def is_underwater(self) -> bool:
        return self.deficit > 0


@dataclass
class TradeResult:
    trade_id: str
    agent_id: str
    pool_id: str
    side: Side
    trade_type: TradeType
    token_amount: int
    notional: int
    new_balance: int
    new_lock: int
    skim_applied: int
    submission_id: Optional[str] = None
    duplicate: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AggregationResult:
    """Weighted aggregate for one belief/epoch plus per-agent leave-one-out views."""
    aggregate: float
    meta_aggregate: float
    jensen_shannon_disagreement_entropy: float
    normalized_disagreement_entropy: float
    certainty: float
    weights: dict[str, float] = field(default_factory=dict)
    active_agent_indicators: list[str] = field(default_factory=list)
    leave_one_out_aggregates: dict[str, float] = field(default_factory=dict)
    leave_one_out_meta_aggregates: dict[str, float] = field(default_factory=dict)
    method: AggregationMethod = AggregationMethod.NAIVE
    decomposition_quality: Optional[float] = None


@dataclass
class DecompositionResult:
    """Prior-corrected aggregate from the 2x2 local-expectations fit."""
    aggregate: float
    common_prior: float
    matrix: tuple[float, float, float, float]  # w11, w12, w21, w22 (row-stochastic)
    quality: float
    condition_number: float
    prediction_accuracy: float


@dataclass
class LearningAssessment:
    learning_occurred: bool
    disagreement_entropy_reduction: float
    economic_learning_rate: float
    previous_entropy: float
    current_entropy: float


@dataclass
class ScoringResult:
    bts_scores: dict[str, float] = field(default_factory=dict)
    information_scores: dict[str, float] = field(default_factory=dict)
    winners: list[str] = field(default_factory=list)
    losers: list[str] = field(default_factory=list)


@dataclass
class StakeDelta:
    agent_id: str
    stake_before: int
    stake_after: int
    information_score: float = 0.0

    @property
    def delta(self) -> int:
        return self.stake_after - self.stake_before


@dataclass
class RedistributionResult:
    redistribution_occurred: bool
    total_penalty_pot: int = 0
    total_rewards: int = 0
    rollover_before: int = 0
    rollover_after: int = 0
    stake_deltas: list[StakeDelta] = field(default_factory=list)


@dataclass
class RebaseStatus:
    belief_id: str
    can_settle: bool
    unaccounted_submissions: int
    min_required: int
    cooldown_remaining_seconds: int
    current_epoch: int
    reason: str


@dataclass
class SettlementResult:
    belief_id: str
    epoch: int
    next_epoch: int
    new_aggregate: float
    certainty: float
    disagreement_entropy: float
    bd_score_ppm: int
    learning_occurred: bool
    redistribution_occurred: bool
    stake_deltas: list[StakeDelta] = field(default_factory=list)
    rollover_after: int = 0
    aggregation_method: AggregationMethod = AggregationMethod.NAIVE
    decomposition_quality: Optional[float] = None
    cached: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["aggregation_method"] = self.aggregation_method.value
        for sd, obj in zip(d["stake_deltas"], self.stake_deltas):
            sd["delta"] = obj.delta
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "SettlementResult":
        deltas = [
            StakeDelta(
                agent_id=d["agent_id"],
                stake_before=d["stake_before"],
                stake_after=d["stake_after"],
                information_score=d.get("information_score", 0.0),
            )
            for d in data.get("stake_deltas", [])
        ]
        return cls(
            belief_id=data["belief_id"],
            epoch=data["epoch"],
            next_epoch=data["next_epoch"],
            new_aggregate=data["new_aggregate"],
            certainty=data["certainty"],
            disagreement_entropy=data["disagreement_entropy"],
            bd_score_ppm=data["bd_score_ppm"],
            learning_occurred=data["learning_occurred"],
            redistribution_occurred=data["redistribution_occurred"],
            stake_deltas=deltas,
            rollover_after=data.get("rollover_after", 0),
            aggregation_method=AggregationMethod(data.get("aggregation_method", AggregationMethod.NAIVE.value)),
            decomposition_quality=data.get("decomposition_quality"),
            cached=data.get("cached", False),
        )
