"""
Tests for belief aggregation, leave-one-out views and stake weights.
"""

import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import EPSILON_PROBABILITY
from consensus.aggregator import (
    Aggregator,
    aggregate_submissions,
    binary_entropy,
    clamp_probability,
    jensen_shannon_disagreement,
    leave_one_out_from_submissions,
    weights_from_locks,
)
from models.errors import MissingWeight, ValidationError
from models.reasons import REASON_EXCLUDED_AGENT_WEIGHTED, REASON_WEIGHTS_NOT_NORMALIZED
from models.types import BeliefSubmission
from protocol.service import ProtocolService


def _sub(agent_id: str, belief: float, meta: float, epoch: int = 0) -> BeliefSubmission:
    return BeliefSubmission(f"s-{agent_id}-{epoch}", agent_id, "b1", epoch, belief, meta)


SUBS = {
    "a": _sub("a", 0.2, 0.3),
    "b": _sub("b", 0.8, 0.7),
    "c": _sub("c", 0.5, 0.5),
}


class TestEntropy:
    def test_binary_entropy_edges(self):
        assert float(binary_entropy(0.0)) == 0.0
        assert float(binary_entropy(1.0)) == 0.0
        assert float(binary_entropy(0.5)) == pytest.approx(1.0)

    def test_clamp(self):
        assert clamp_probability(0.0) == EPSILON_PROBABILITY
        assert clamp_probability(1.0) == 1.0 - EPSILON_PROBABILITY

    def test_unanimous_has_no_disagreement(self):
        assert jensen_shannon_disagreement([0.7, 0.7], [0.5, 0.5]) == pytest.approx(0.0, abs=1e-12)

    def test_opposed_beliefs(self):
        # 1 - H(0.1)
        assert jensen_shannon_disagreement([0.1, 0.9], [0.5, 0.5]) == pytest.approx(0.531004, abs=1e-5)


class TestLeaveOneOut:
    def test_excludes_agent(self):
        belief, meta = leave_one_out_from_submissions(SUBS, "a", {"b": 0.5, "c": 0.5})
        assert belief == pytest.approx(0.65)
        assert meta == pytest.approx(0.6)

    def test_excluded_agent_in_weights(self):
        with pytest.raises(ValidationError) as exc:
            leave_one_out_from_submissions(SUBS, "a", {"a": 0.2, "b": 0.4, "c": 0.4})
        assert exc.value.reason == REASON_EXCLUDED_AGENT_WEIGHTED

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError) as exc:
            leave_one_out_from_submissions(SUBS, "a", {"b": 0.5, "c": 0.4})
        assert exc.value.reason == REASON_WEIGHTS_NOT_NORMALIZED

    def test_weight_tolerance(self):
        leave_one_out_from_submissions(SUBS, "a", {"b": 0.5, "c": 0.5 + 1e-11})
        with pytest.raises(ValidationError):
            leave_one_out_from_submissions(SUBS, "a", {"b": 0.5, "c": 0.5 + 1e-9})

    def test_missing_weight(self):
        with pytest.raises(MissingWeight) as exc:
            leave_one_out_from_submissions(SUBS, "a", {"b": 1.0})
        assert exc.value.agent_id == "c"

    def test_no_contributors_returns_prior(self):
        assert leave_one_out_from_submissions({"a": SUBS["a"]}, "a", {}) == (0.5, 0.5)


class TestAggregate:
    def test_two_opposed_agents(self):
        subs = {"a": _sub("a", 0.1, 0.1), "b": _sub("b", 0.9, 0.9)}
        result = aggregate_submissions(subs, {"a": 0.5, "b": 0.5}, epoch=0)
        assert result.aggregate == pytest.approx(0.5)
        assert result.jensen_shannon_disagreement_entropy == pytest.approx(0.531004, abs=1e-5)
        assert result.certainty == pytest.approx(1.0 - 0.531004, abs=1e-5)
        assert result.leave_one_out_aggregates["a"] == pytest.approx(0.9)
        assert result.leave_one_out_aggregates["b"] == pytest.approx(0.1)

    def test_only_current_epoch_agents_active(self):
        subs = {"a": _sub("a", 0.4, 0.4, epoch=0), "b": _sub("b", 0.6, 0.6, epoch=1)}
        result = aggregate_submissions(subs, {"a": 0.5, "b": 0.5}, epoch=1)
        assert result.active_agent_indicators == ["b"]
        # Stale statements still count toward the aggregate
        assert result.aggregate == pytest.approx(0.5)

    def test_empty(self):
        result = aggregate_submissions({}, {}, epoch=0)
        assert result.aggregate == 0.5
        assert result.certainty == 0.0

    def test_missing_weight(self):
        with pytest.raises(MissingWeight):
            aggregate_submissions(SUBS, {"a": 0.5, "b": 0.5}, epoch=0)

    def test_extremes_are_clamped(self):
        subs = {"a": _sub("a", 0.0, 0.0), "b": _sub("b", 0.0, 0.0)}
        result = aggregate_submissions(subs, {"a": 0.5, "b": 0.5}, epoch=0)
        assert result.aggregate == EPSILON_PROBABILITY


class TestWeights:
    def test_proportional_to_locks(self):
        weights = weights_from_locks({"a": 300, "b": 100}, {"a", "b"})
        assert weights == {"a": 0.75, "b": 0.25}

    def test_open_position_keeps_floor(self):
        weights = weights_from_locks({"a": 0, "b": 100}, {"a", "b"})
        assert weights["a"] > 0
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_all_zero_is_uniform(self):
        assert weights_from_locks({"a": 0, "b": 0}, set()) == {"a": 0.5, "b": 0.5}


class TestAggregatorService:
    def test_aggregate_from_store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            svc = ProtocolService.from_config(db_path=Path(tmpdir) / "protocol.db")
            svc.create_belief("b1", "creator", duration_epochs=3, pool_id="p1")
            svc.submit_belief("a", "b1", 0.2, 0.3, 0)
            svc.submit_belief("b", "b1", 0.8, 0.7, 0)
            result = svc.aggregator.aggregate("b1")
            # No locks anywhere: equal weights
            assert result.weights == {"a": 0.5, "b": 0.5}
            assert result.aggregate == pytest.approx(0.5)
            assert svc.aggregator.leave_one_out_aggregate("b1", "a", {"b": 1.0}) == pytest.approx((0.8, 0.7))
