"""
Centralized reason strings for rejections and state transitions — single source of truth.

Every module that emits a reason string MUST import from here.
Tests MUST assert exact values (not partial matches).
"""

# ── Validation ──
REASON_INVALID_PROBABILITY = "validation: probability_out_of_range"
REASON_NEGATIVE_AMOUNT = "validation: negative_amount"
REASON_ZERO_AMOUNT = "validation: zero_amount"
REASON_WRONG_EPOCH = "validation: epoch_not_open"
REASON_BELIEF_NOT_ACTIVE = "validation: belief_not_active"
REASON_MISSING_WEIGHT = "validation: missing_weight"
REASON_EXCLUDED_AGENT_WEIGHTED = "validation: excluded_agent_in_weights"
REASON_WEIGHTS_NOT_NORMALIZED = "validation: weights_not_normalized"
REASON_OVERSELL = "validation: sell_exceeds_balance"
REASON_DUPLICATE = "validation: duplicate"

# ── Lookup ──
REASON_UNKNOWN_AGENT = "not_found: agent"
REASON_UNKNOWN_BELIEF = "not_found: belief"
REASON_UNKNOWN_POOL = "not_found: pool"

# ── Collateral ──
REASON_INSUFFICIENT_COLLATERAL = "collateral: insufficient_skim"
REASON_SKIM_CAP_EXCEEDED = "collateral: skim_cap_exceeded"
REASON_INVARIANT_VIOLATION = "INVARIANT_VIOLATION"

# ── AMM ──
REASON_NUMERICAL_OVERFLOW = "amm: numerical_overflow"
REASON_EMPTY_SUPPLY = "amm: empty_supply"

# ── Rebase / settlement ──
REASON_REBASE_OK = "rebase_ok"
REASON_REBASE_INSUFFICIENT_SUBMISSIONS = "rebase_veto: insufficient_new_submissions"
REASON_REBASE_COOLDOWN = "rebase_veto: cooldown_active"
REASON_REBASE_NOT_ACTIVE = "rebase_veto: belief_not_active"
REASON_REBASE_NO_POOL = "rebase_veto: no_pool"
REASON_SETTLEMENT_IN_PROGRESS = "rebase_veto: settlement_in_progress"
REASON_EPOCH_MISMATCH = "rebase_veto: epoch_mismatch"

# ── Consensus ──
REASON_NO_LEARNING = "consensus: no_learning"
REASON_NO_WINNERS_ROLLOVER = "consensus: no_winners_rollover"
REASON_INSUFFICIENT_PARTICIPANTS = "consensus: insufficient_participants"
REASON_DECOMPOSITION_FAILED = "consensus: decomposition_failed"
REASON_BELIEFS_AT_BOUNDARIES = "consensus: beliefs_at_boundaries"

# ── External ledger ──
REASON_LEDGER_UNAVAILABLE = "ledger: unavailable"
REASON_LEDGER_REJECTED = "ledger: rejected"
