"""
Belief decomposition — prior-corrected epoch aggregate.

Each agent's (belief, meta_prediction) pair is one observation of a
two-state local-expectations matrix W, fitted by weighted ridge regression
of meta on belief. W is row-stochastic (w12 = 1 - w11, w22 = 1 - w21) and
its stationary distribution is the common prior:

    prior = w21 / (w21 + 1 - w11)

The aggregate removes that shared prior from the weighted log-odds pool:

    logit(aggregate) = sum w_i logit(b_i) - logit(prior)

The fit is graded before it is trusted:

    quality = 0.7 / (1 + log10(cond(W))) + 0.3 * (1 - mean |m_i - m_hat_i|)
    m_hat_i = b_i * w11 + (1 - b_i) * w21

aggregate_beliefs uses the decomposed aggregate when quality reaches the
configured threshold and the weighted mean otherwise. Leave-one-out views,
disagreement and certainty always come from the weighted mean, so scoring
is the same whichever path produced the canonical score.
"""

import logging
from dataclasses import replace
from typing import Mapping

import numpy as np

from config import DECOMPOSITION_QUALITY_THRESHOLD, EPSILON_PROBABILITY
from consensus.aggregator import aggregate_submissions, clamp_probability
from models.errors import DecompositionFailed
from models.reasons import REASON_BELIEFS_AT_BOUNDARIES
from models.types import AggregationMethod, AggregationResult, BeliefSubmission, DecompositionResult

logger = logging.getLogger(__name__)

MIN_DECOMPOSITION_PARTICIPANTS = 2
RIDGE_EPSILON = 1e-5
MAX_CONDITION_NUMBER = 1000.0

# Beliefs this close to 0 or 1 carry no usable support for the fit
BOUNDARY_BAND = 0.02
MAX_BOUNDARY_WEIGHT = 0.8
MIN_SUPPORT_SPREAD = 0.2

# exp() overflows past this
MAX_LOG_ODDS = 700.0


def fit_local_expectations(beliefs: np.ndarray, metas: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted ridge fit of meta on belief, returned as a row-stochastic 2x2 matrix."""
    sw = float(weights.sum())
    swb = float(np.dot(weights, beliefs))
    swm = float(np.dot(weights, metas))
    variance = float(np.dot(weights, beliefs * beliefs)) - swb * swb / sw
    if variance < RIDGE_EPSILON * 10:
        logger.warning("Near-singular fit: belief variance %.3e, ridge %.0e applied", variance, RIDGE_EPSILON)
    slope = (float(np.dot(weights, beliefs * metas)) - swb * swm / sw) / (variance + RIDGE_EPSILON)
    intercept = (swm - slope * swb) / sw
    w11 = float(np.clip(slope, 0.0, 1.0))
    w21 = float(np.clip(intercept, 0.0, 1.0))
    return np.array([[w11, 1.0 - w11], [w21, 1.0 - w21]])


def common_prior(matrix: np.ndarray) -> float:
    """Stationary distribution of W, clamped away from 0 and 1."""
    w11, w21 = float(matrix[0, 0]), float(matrix[1, 0])
    denom = w21 + (1.0 - w11)
    if abs(denom) < EPSILON_PROBABILITY:
        raise DecompositionFailed(f"no stationary distribution (w11={w11:.6g}, w21={w21:.6g})")
    return clamp_probability(w21 / denom)


def condition_number(matrix: np.ndarray) -> float:
    eigenvalues = np.linalg.eigvals(matrix)
    if np.any(np.abs(eigenvalues.imag) > EPSILON_PROBABILITY):
        return MAX_CONDITION_NUMBER
    magnitudes = np.sort(np.abs(eigenvalues.real))
    if magnitudes[0] < EPSILON_PROBABILITY:
        return MAX_CONDITION_NUMBER
    return float(magnitudes[-1] / magnitudes[0])


def prior_corrected_aggregate(beliefs: np.ndarray, weights: np.ndarray, prior: float) -> float:
    total = float(weights.sum())
    log_odds = float(np.dot(weights, np.log(beliefs) - np.log1p(-beliefs)))
    log_odds -= total * float(np.log(prior) - np.log1p(-prior))
    if not np.isfinite(log_odds):
        raise DecompositionFailed(f"log-odds not finite ({log_odds})")
    if log_odds > MAX_LOG_ODDS:
        return clamp_probability(1.0)
    if log_odds < -MAX_LOG_ODDS:
        return clamp_probability(0.0)
    return clamp_probability(1.0 / (1.0 + float(np.exp(-log_odds))))


def _check_support(beliefs: np.ndarray, weights: np.ndarray) -> None:
    at_edges = (beliefs < BOUNDARY_BAND) | (beliefs > 1.0 - BOUNDARY_BAND)
    share = float(weights[at_edges].sum() / weights.sum())
    if share > MAX_BOUNDARY_WEIGHT:
        raise DecompositionFailed(
            f"{share:.1%} of weighted beliefs sit within {BOUNDARY_BAND} of 0 or 1", REASON_BELIEFS_AT_BOUNDARIES
        )
    spread = float(beliefs.max() - beliefs.min())
    if spread < MIN_SUPPORT_SPREAD:
        logger.warning("Low belief diversity: spread %.3f < %.2f, decomposition may be unreliable", spread, MIN_SUPPORT_SPREAD)


def decompose(beliefs, metas, weights) -> DecompositionResult:
    """
    Fit W, extract the common prior and return the prior-corrected aggregate.

    Args:
        beliefs, metas, weights: Parallel sequences over agents with positive
            weight. Weights sum to 1.

    Raises:
        DecompositionFailed: fewer than two participants, beliefs piled up at
            0 or 1, or a numerically unusable fit
    """
    b = clamp_probability(np.asarray(beliefs, dtype=float))
    m = clamp_probability(np.asarray(metas, dtype=float))
    w = np.asarray(weights, dtype=float)
    if b.size < MIN_DECOMPOSITION_PARTICIPANTS:
        raise DecompositionFailed(f"{b.size} participant(s), need {MIN_DECOMPOSITION_PARTICIPANTS}")
    _check_support(b, w)

    matrix = fit_local_expectations(b, m, w)
    prior = common_prior(matrix)
    aggregate = prior_corrected_aggregate(b, w, prior)

    cond = condition_number(matrix)
    health = 1.0 / (1.0 + float(np.log10(max(1.0, cond))))
    predicted = b * matrix[0, 0] + (1.0 - b) * matrix[1, 0]
    accuracy = 1.0 - float(np.mean(np.abs(predicted - m)))
    quality = float(np.clip(0.7 * health + 0.3 * accuracy, 0.0, 1.0))
    if cond > MAX_CONDITION_NUMBER:
        logger.warning("Condition number %.0f above %.0f (quality %.3f)", cond, MAX_CONDITION_NUMBER, quality)

    return DecompositionResult(
        aggregate=aggregate,
        common_prior=prior,
        matrix=tuple(float(x) for x in matrix.ravel()),
        quality=quality,
        condition_number=cond,
        prediction_accuracy=accuracy,
    )


def aggregate_beliefs(
    submissions: Mapping[str, BeliefSubmission],
    weights: Mapping[str, float],
    epoch: int,
    quality_threshold: float = DECOMPOSITION_QUALITY_THRESHOLD,
) -> AggregationResult:
    """Settlement aggregate: decomposition when the fit is good enough, weighted mean otherwise."""
    naive = aggregate_submissions(submissions, weights, epoch)
    agents = [a for a in sorted(submissions) if weights.get(a, 0.0) > 0.0]
    if len(agents) < MIN_DECOMPOSITION_PARTICIPANTS:
        return naive

    try:
        fit = decompose(
            [submissions[a].belief for a in agents],
            [submissions[a].meta_prediction for a in agents],
            [weights[a] for a in agents],
        )
    except DecompositionFailed as e:
        logger.info("Decomposition unavailable (%s: %s), using weighted mean", e.reason, e)
        return naive

    if fit.quality < quality_threshold:
        logger.info("Decomposition quality %.3f below %.3f, using weighted mean", fit.quality, quality_threshold)
        return replace(naive, decomposition_quality=fit.quality)

    logger.debug("Decomposed aggregate %.6f (prior %.6f, quality %.3f)", fit.aggregate, fit.common_prior, fit.quality)
    return replace(
        naive,
        aggregate=fit.aggregate,
        method=AggregationMethod.DECOMPOSITION,
        decomposition_quality=fit.quality,
    )
