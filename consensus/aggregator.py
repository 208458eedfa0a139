"""
Belief aggregation — weighted consensus and leave-one-out views.

Every participant's most recent statement counts, not only the current
epoch's. Values are clamped to [EPS, 1 - EPS] on the way in and the
aggregate is clamped again on the way out, so entropy and KL terms
downstream never see 0 or 1.

Disagreement is the weighted Jensen–Shannon divergence between the
participants' Bernoulli beliefs:

    D = H(sum w_i p_i) - sum w_i H(p_i)        (bits, H = binary entropy)

certainty = 1 - min(1, D).
"""

import logging
import sqlite3
from typing import Mapping, Optional

import numpy as np

from config import EPSILON_PROBABILITY, EPSILON_STAKES, LOO_WEIGHT_TOLERANCE
from models.errors import MissingWeight, ValidationError
from models.reasons import REASON_EXCLUDED_AGENT_WEIGHTED, REASON_WEIGHTS_NOT_NORMALIZED
from models.types import AggregationResult, BeliefSubmission
from storage import rows
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

UNINFORMATIVE_PRIOR = (0.5, 0.5)


def clamp_probability(value, eps: float = EPSILON_PROBABILITY):
    """Clamp a scalar or array into [eps, 1 - eps]."""
    clipped = np.clip(value, eps, 1.0 - eps)
    return float(clipped) if np.ndim(clipped) == 0 else clipped


def binary_entropy(p) -> np.ndarray:
    """Binary entropy in bits. Exactly 0 at the edges."""
    p = np.asarray(p, dtype=float)
    out = np.zeros_like(p)
    inner = (p > 0.0) & (p < 1.0)
    q = p[inner]
    out[inner] = -(q * np.log2(q) + (1.0 - q) * np.log2(1.0 - q))
    return out


def jensen_shannon_disagreement(beliefs, weights) -> float:
    """Weighted JS divergence of Bernoulli beliefs, never negative."""
    b = clamp_probability(np.asarray(beliefs, dtype=float))
    w = np.asarray(weights, dtype=float)
    if b.size == 0:
        return 0.0
    mixture = float(np.dot(w, b))
    d = float(binary_entropy(mixture)) - float(np.dot(w, binary_entropy(b)))
    return max(0.0, d)


def _validate_loo_weights(excluded_agent: str, weights: Mapping[str, float]) -> None:
    if excluded_agent in weights:
        raise ValidationError(
            f"Excluded agent {excluded_agent} must not appear in weights", REASON_EXCLUDED_AGENT_WEIGHTED
        )
    total = sum(weights.values())
    if abs(total - 1.0) > LOO_WEIGHT_TOLERANCE:
        raise ValidationError(f"Weights sum to {total!r}, expected 1.0", REASON_WEIGHTS_NOT_NORMALIZED)


def leave_one_out_from_submissions(
    submissions: Mapping[str, BeliefSubmission],
    excluded_agent: str,
    weights: Mapping[str, float],
) -> tuple[float, float]:
    """
    Pure leave-one-out aggregate over *submissions* (latest per agent).

    Returns (belief_aggregate, meta_aggregate). With no contributing
    submission returns the uninformative prior (0.5, 0.5).
    """
    if excluded_agent in weights:
        raise ValidationError(
            f"Excluded agent {excluded_agent} must not appear in weights", REASON_EXCLUDED_AGENT_WEIGHTED
        )
    contributors = [s for agent_id, s in sorted(submissions.items()) if agent_id != excluded_agent]
    if not contributors:
        return UNINFORMATIVE_PRIOR

    _validate_loo_weights(excluded_agent, weights)
    for s in contributors:
        if s.agent_id not in weights:
            raise MissingWeight(s.agent_id)

    w = np.array([weights[s.agent_id] for s in contributors], dtype=float)
    b = clamp_probability(np.array([s.belief for s in contributors], dtype=float))
    m = clamp_probability(np.array([s.meta_prediction for s in contributors], dtype=float))
    total = float(w.sum())
    if total <= 0.0:
        return UNINFORMATIVE_PRIOR
    return clamp_probability(float(np.dot(w, b)) / total), clamp_probability(float(np.dot(w, m)) / total)


def weights_from_locks(lock_by_agent: Mapping[str, int], open_agents: set) -> dict[str, float]:
    """
    Normalize per-agent lock totals into weights.

    An agent with an open position keeps at least EPSILON_STAKES so it is
    never silently dropped; if every raw weight is zero all agents weigh
    the same.
    """
    agents = sorted(lock_by_agent)
    if not agents:
        return {}
    raw = {}
    for agent_id in agents:
        lock = float(lock_by_agent[agent_id])
        raw[agent_id] = max(lock, EPSILON_STAKES) if agent_id in open_agents else lock
    total = sum(raw.values())
    if total <= 0.0:
        return {agent_id: 1.0 / len(agents) for agent_id in agents}
    return {agent_id: value / total for agent_id, value in raw.items()}


def calculate_weights(conn: sqlite3.Connection, pool_id: Optional[str], participants: list[str]) -> dict[str, float]:
    """Stake weights from each participant's belief locks on the belief's pool."""
    locks = {agent_id: 0 for agent_id in participants}
    open_agents = set()
    if pool_id is not None:
        for position in rows.load_pool_positions(conn, pool_id):
            if position.agent_id in locks:
                locks[position.agent_id] += position.belief_lock
                open_agents.add(position.agent_id)
    return weights_from_locks(locks, open_agents)


def aggregate_submissions(
    submissions: Mapping[str, BeliefSubmission],
    weights: Mapping[str, float],
    epoch: int,
) -> AggregationResult:
    """
    Weighted aggregate, JS disagreement and per-active-agent LOO aggregates.

    Active agents are those whose latest submission belongs to *epoch*.
    """
    agents = sorted(submissions)
    if not agents:
        return AggregationResult(
            aggregate=0.5,
            meta_aggregate=0.5,
            jensen_shannon_disagreement_entropy=0.0,
            normalized_disagreement_entropy=0.0,
            certainty=0.0,
        )
    for agent_id in agents:
        if agent_id not in weights:
            raise MissingWeight(agent_id)

    w = np.array([weights[a] for a in agents], dtype=float)
    total = float(w.sum())
    if abs(total - 1.0) > LOO_WEIGHT_TOLERANCE:
        raise ValidationError(f"Weights sum to {total!r}, expected 1.0", REASON_WEIGHTS_NOT_NORMALIZED)
    b = clamp_probability(np.array([submissions[a].belief for a in agents], dtype=float))
    m = clamp_probability(np.array([submissions[a].meta_prediction for a in agents], dtype=float))

    aggregate = clamp_probability(float(np.dot(w, b)))
    meta_aggregate = clamp_probability(float(np.dot(w, m)))
    disagreement = jensen_shannon_disagreement(b, w)
    normalized = min(1.0, disagreement)

    active = [a for a in agents if submissions[a].epoch == epoch]
    loo_beliefs: dict[str, float] = {}
    loo_metas: dict[str, float] = {}
    for i, agent_id in enumerate(agents):
        if agent_id not in active:
            continue
        if len(agents) == 1:
            loo_beliefs[agent_id] = float(b[i])
            loo_metas[agent_id] = float(m[i])
            continue
        remaining = 1.0 - float(w[i])
        if remaining <= EPSILON_PROBABILITY:
            loo_beliefs[agent_id], loo_metas[agent_id] = UNINFORMATIVE_PRIOR
            continue
        mask = np.arange(len(agents)) != i
        loo_beliefs[agent_id] = clamp_probability(float(np.dot(w[mask], b[mask])) / remaining)
        loo_metas[agent_id] = clamp_probability(float(np.dot(w[mask], m[mask])) / remaining)

    return AggregationResult(
        aggregate=aggregate,
        meta_aggregate=meta_aggregate,
        jensen_shannon_disagreement_entropy=disagreement,
        normalized_disagreement_entropy=normalized,
        certainty=1.0 - normalized,
        weights=dict(zip(agents, (float(x) for x in w))),
        active_agent_indicators=active,
        leave_one_out_aggregates=loo_beliefs,
        leave_one_out_meta_aggregates=loo_metas,
    )


class Aggregator:
    """Snapshot-reading front end over the pure aggregation functions."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def leave_one_out_aggregate(
        self,
        belief_id: str,
        excluded_agent: str,
        weights: Mapping[str, float],
        conn: Optional[sqlite3.Connection] = None,
    ) -> tuple[float, float]:
        """
        (belief_aggregate, meta_aggregate) over every other agent's latest submission.

        Raises:
            ValidationError: weights contain the excluded agent or do not sum to 1
            MissingWeight: a contributing agent has no weight
        """
        if conn is None:
            with self._store.snapshot() as snap:
                return self.leave_one_out_aggregate(belief_id, excluded_agent, weights, conn=snap)
        rows.load_belief(conn, belief_id)
        submissions = rows.latest_submissions(conn, belief_id)
        return leave_one_out_from_submissions(submissions, excluded_agent, weights)

    def aggregate(self, belief_id: str, epoch: Optional[int] = None, conn: Optional[sqlite3.Connection] = None) -> AggregationResult:
        """Stake-weighted aggregate for *belief_id* as of *epoch* (default: current)."""
        if conn is None:
            with self._store.snapshot() as snap:
                return self.aggregate(belief_id, epoch, conn=snap)
        belief = rows.load_belief(conn, belief_id)
        submissions = rows.latest_submissions(conn, belief_id)
        weights = calculate_weights(conn, belief.pool_id, list(submissions))
        result = aggregate_submissions(submissions, weights, belief.current_epoch if epoch is None else epoch)
        logger.debug(
            "Aggregated belief=%s agents=%d aggregate=%.6f D=%.6f certainty=%.6f",
            belief_id,
            len(submissions),
            result.aggregate,
            result.jensen_shannon_disagreement_entropy,
            result.certainty,
        )
        return result
