"""
Consensus engine — aggregation, scoring and zero-sum redistribution.

EpochScheduler runs these once per epoch: Aggregator (with belief decomposition) feeds the scorer,
the scorer feeds StakeRedistributor.
"""

from consensus.aggregator import Aggregator, aggregate_submissions, leave_one_out_from_submissions
from consensus.decomposition import aggregate_beliefs, decompose
from consensus.redistributor import StakeRedistributor, split_largest_remainder
from consensus.scorer import assess_learning, score_agents
from consensus.submissions import BeliefBook

__all__ = [
    "Aggregator",
    "aggregate_submissions",
    "leave_one_out_from_submissions",
    "aggregate_beliefs",
    "decompose",
    "StakeRedistributor",
    "split_largest_remainder",
    "assess_learning",
    "score_agents",
    "BeliefBook",
]
