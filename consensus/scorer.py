"""
Consensus scoring — learning gate and Bayesian Truth Serum scores.

Learning gate:
    reduction = max(0, D_previous - D_current)
    learning  = reduction > learning_threshold
When no learning occurred the epoch is neither scored nor redistributed.

BTS score for active agent i (natural-log binary KL):
    s_i = KL(p_i || m_-i) - KL(p_i || p_-i) - KL(p_-i || m_i)
where p_-i, m_-i are the leave-one-out belief and meta aggregates.
The information score is w_i * s_i.
"""

import logging
from typing import Mapping

import numpy as np

from config import EPSILON_PROBABILITY
from consensus.aggregator import clamp_probability
from models.types import AggregationResult, BeliefSubmission, LearningAssessment, ScoringResult

logger = logging.getLogger(__name__)

# Scores within this band are neutral (neither winner nor loser)
SCORE_EPSILON = 1e-12


def kl_binary(p: float, q: float) -> float:
    """KL divergence between Bernoulli(p) and Bernoulli(q), nats."""
    p = clamp_probability(p)
    q = clamp_probability(q)
    return float(p * np.log(p / q) + (1.0 - p) * np.log((1.0 - p) / (1.0 - q)))


def assess_learning(previous_entropy: float, current_entropy: float, threshold: float) -> LearningAssessment:
    """
    Compare disagreement before (previous epoch) and after (this epoch).

    Examples:
        >>> assess_learning(0.0, 0.0003, 1e-3).learning_occurred
        False
        >>> assess_learning(0.53, 0.01, 1e-3).learning_occurred
        True
    """
    reduction = max(0.0, previous_entropy - current_entropy)
    rate = reduction / previous_entropy if previous_entropy >= EPSILON_PROBABILITY else 0.0
    return LearningAssessment(
        learning_occurred=reduction > threshold,
        disagreement_entropy_reduction=reduction,
        economic_learning_rate=min(1.0, max(0.0, rate)),
        previous_entropy=previous_entropy,
        current_entropy=current_entropy,
    )


def bts_score(belief: float, meta_prediction: float, loo_belief: float, loo_meta: float) -> float:
    return (
        kl_binary(belief, loo_meta)
        - kl_binary(belief, loo_belief)
        - kl_binary(loo_belief, meta_prediction)
    )


def score_agents(
    aggregation: AggregationResult,
    submissions: Mapping[str, BeliefSubmission],
) -> ScoringResult:
    """Score every agent active in the epoch against its leave-one-out aggregates."""
    result = ScoringResult()
    for agent_id in sorted(aggregation.active_agent_indicators):
        submission = submissions[agent_id]
        raw = bts_score(
            submission.belief,
            submission.meta_prediction,
            aggregation.leave_one_out_aggregates[agent_id],
            aggregation.leave_one_out_meta_aggregates[agent_id],
        )
        info = aggregation.weights.get(agent_id, 0.0) * raw
        result.bts_scores[agent_id] = raw
        result.information_scores[agent_id] = info
        if info > SCORE_EPSILON:
            result.winners.append(agent_id)
        elif info < -SCORE_EPSILON:
            result.losers.append(agent_id)
    logger.debug("Scored %d agents: %d winners, %d losers", len(result.bts_scores), len(result.winners), len(result.losers))
    return result
