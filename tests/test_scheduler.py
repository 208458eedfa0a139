"""
Tests for the epoch scheduler: gating, cooldown, idempotency, claims, rollback, learning gate, expiry.
"""

import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import epochs.scheduler as scheduler_module
from epochs.scheduler import cooldown_remaining, quantize_ppm
from models.errors import NotEligible, SettlementInProgress, ValidationError
from models.reasons import (
    REASON_EPOCH_MISMATCH,
    REASON_REBASE_COOLDOWN,
    REASON_REBASE_INSUFFICIENT_SUBMISSIONS,
    REASON_REBASE_NOT_ACTIVE,
    REASON_REBASE_OK,
    REASON_SETTLEMENT_IN_PROGRESS,
)
from models.types import AggregationMethod, BeliefStatus, EpochState, Pool, SettlementStatus, Side
from protocol.service import ProtocolService
from storage import rows
from storage.config_store import ProtocolConfig, read_rollover

T0 = 1_000_000.0
STAKE = 1_000_000


def _make_service(tmpdir: str, **overrides) -> ProtocolService:
    svc = ProtocolService.from_config(db_path=Path(tmpdir) / "protocol.db", config_overrides=overrides)
    svc.create_belief("b1", "creator", duration_epochs=5, pool_id="p1")
    return svc


@pytest.fixture
def service():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield _make_service(tmpdir, min_settle_interval=3600)


@pytest.fixture
def fast_service():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield _make_service(tmpdir, min_settle_interval=0)


def _submit_pair(svc, epoch: int, a=(0.4, 0.5), b=(0.6, 0.5)):
    svc.submit_belief("alice", "b1", a[0], a[1], epoch)
    svc.submit_belief("bob", "b1", b[0], b[1], epoch)


class TestHelpers:
    def test_quantize_ppm(self):
        assert quantize_ppm(0.5) == 500_000
        assert quantize_ppm(1.2) == 1_000_000
        assert quantize_ppm(-0.1) == 0

    def test_cooldown_rounds_up(self):
        cfg = ProtocolConfig(min_settle_interval=3600)
        pool = Pool(pool_id="p", belief_id="b", last_settled_at=T0)
        assert cooldown_remaining(pool, cfg, T0 + 0.5) == 3600
        assert cooldown_remaining(pool, cfg, T0 + 3600) == 0
        assert cooldown_remaining(None, cfg, T0) == 0

    def test_pool_interval_overrides_config(self):
        cfg = ProtocolConfig(min_settle_interval=3600)
        pool = Pool(pool_id="p", belief_id="b", last_settled_at=T0, min_settle_interval=60)
        assert cooldown_remaining(pool, cfg, T0 + 30) == 30


class TestGating:
    def test_one_submitter_not_enough(self, service):
        service.submit_belief("alice", "b1", 0.4, 0.5, 0)
        status = service.get_rebase_status("b1", now=T0)
        assert not status.can_settle
        assert status.reason == REASON_REBASE_INSUFFICIENT_SUBMISSIONS
        assert status.unaccounted_submissions == 1
        assert status.min_required == 2
        with pytest.raises(NotEligible) as exc:
            service.settle_epoch("b1", now=T0)
        assert exc.value.reason == REASON_REBASE_INSUFFICIENT_SUBMISSIONS

    def test_resubmission_counts_once(self, service):
        service.submit_belief("alice", "b1", 0.4, 0.5, 0)
        service.submit_belief("alice", "b1", 0.45, 0.5, 0)
        assert service.get_rebase_status("b1", now=T0).unaccounted_submissions == 1

    def test_two_submitters_eligible(self, service):
        _submit_pair(service, 0)
        status = service.get_rebase_status("b1", now=T0)
        assert status.can_settle
        assert status.reason == REASON_REBASE_OK
        assert service.scheduler.refresh_state("b1", now=T0) == EpochState.ELIGIBLE_FOR_SETTLEMENT

    def test_cooldown_after_settlement(self, service):
        _submit_pair(service, 0)
        service.settle_epoch("b1", now=T0)
        _submit_pair(service, 1)
        status = service.get_rebase_status("b1", now=T0 + 10)
        assert status.reason == REASON_REBASE_COOLDOWN
        assert status.cooldown_remaining_seconds == 3590
        with pytest.raises(NotEligible) as exc:
            service.settle_epoch("b1", now=T0 + 10)
        assert exc.value.cooldown_remaining == 3590
        assert service.settle_epoch("b1", now=T0 + 3600).epoch == 1

    def test_wrong_epoch_submission_rejected(self, service):
        with pytest.raises(ValidationError):
            service.submit_belief("alice", "b1", 0.4, 0.5, 1)


class TestSettlement:
    def test_advances_epoch_and_records_history(self, service):
        _submit_pair(service, 0)
        result = service.settle_epoch("b1", now=T0)
        assert (result.epoch, result.next_epoch) == (0, 1)
        # Both predict 0.5 for a mean belief of 0.5: the shared prior is 1/3
        assert result.new_aggregate == pytest.approx(2 / 3)
        assert result.bd_score_ppm == 666_667
        assert result.aggregation_method == AggregationMethod.DECOMPOSITION
        belief = service.beliefs.get_belief("b1")
        assert belief.current_epoch == 1
        assert belief.last_processed_epoch == 0
        assert belief.epoch_state == EpochState.ACCEPTING_SUBMISSIONS
        with service.store.snapshot() as conn:
            assert conn.execute("SELECT COUNT(*) FROM belief_relevance_history").fetchone()[0] == 1

    def test_queues_instruction_without_touching_pool(self, service):
        _submit_pair(service, 0)
        before = service.amm.get_pool("p1")
        service.settle_epoch("b1", now=T0)
        after = service.amm.get_pool("p1")
        assert (after.r_long, after.r_short) == (before.r_long, before.r_short)
        assert after.last_settled_at == T0
        with service.store.snapshot() as conn:
            row = conn.execute("SELECT * FROM pending_settlements WHERE belief_id = 'b1'").fetchone()
        assert row["status"] == SettlementStatus.PENDING.value
        assert row["bd_score_ppm"] == 666_667
        assert row["pool_id"] == "p1"

    def test_repeat_returns_cached_result(self, service):
        _submit_pair(service, 0)
        first = service.settle_epoch("b1", now=T0)
        again = service.settle_epoch("b1", epoch=0, now=T0 + 5)
        assert again.cached is True
        assert again.new_aggregate == first.new_aggregate
        assert again.bd_score_ppm == first.bd_score_ppm
        with service.store.snapshot() as conn:
            assert conn.execute("SELECT COUNT(*) FROM belief_relevance_history").fetchone()[0] == 1
            assert conn.execute("SELECT COUNT(*) FROM pending_settlements").fetchone()[0] == 1

    def test_weak_fit_settles_on_weighted_mean(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            svc = _make_service(tmpdir, min_settle_interval=0, decomposition_quality_threshold=1.0)
            _submit_pair(svc, 0)
            result = svc.settle_epoch("b1", now=T0)
            assert result.aggregation_method == AggregationMethod.NAIVE
            assert result.new_aggregate == pytest.approx(0.5)
            assert result.bd_score_ppm == 500_000
            assert result.decomposition_quality < 1.0
            cached = svc.settle_epoch("b1", epoch=0, now=T0)
            assert cached.aggregation_method == AggregationMethod.NAIVE

    def test_future_epoch_refused(self, service):
        _submit_pair(service, 0)
        with pytest.raises(NotEligible) as exc:
            service.settle_epoch("b1", epoch=3, now=T0)
        assert exc.value.reason == REASON_EPOCH_MISMATCH

    def test_live_claim_blocks_second_worker(self, service):
        _submit_pair(service, 0)
        with service.store.transaction() as conn:
            belief = rows.load_belief(conn, "b1")
            belief.epoch_state = EpochState.SETTLING
            belief.settling_deadline = T0 + 100
            rows.save_belief(conn, belief)
        with pytest.raises(SettlementInProgress):
            service.settle_epoch("b1", now=T0)
        assert service.get_rebase_status("b1", now=T0).reason == REASON_SETTLEMENT_IN_PROGRESS
        # Past the deadline the claim is released
        assert service.scheduler.refresh_state("b1", now=T0 + 200) == EpochState.ELIGIBLE_FOR_SETTLEMENT
        assert service.settle_epoch("b1", now=T0 + 200).epoch == 0

    def test_failure_rolls_back_to_eligible(self, service, monkeypatch):
        _submit_pair(service, 0)

        def boom(*args, **kwargs):
            raise RuntimeError("aggregation failed")

        monkeypatch.setattr(scheduler_module, "aggregate_beliefs", boom)
        with pytest.raises(RuntimeError):
            service.settle_epoch("b1", now=T0)
        belief = service.beliefs.get_belief("b1")
        assert belief.epoch_state == EpochState.ELIGIBLE_FOR_SETTLEMENT
        assert belief.current_epoch == 0
        with service.store.snapshot() as conn:
            assert conn.execute("SELECT COUNT(*) FROM belief_relevance_history").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM pending_settlements").fetchone()[0] == 0

        monkeypatch.undo()
        assert service.settle_epoch("b1", now=T0).epoch == 0


class TestLearningGate:
    def test_first_epoch_no_learning_then_convergence_redistributes(self, fast_service):
        svc = fast_service
        for agent_id in ("alice", "bob"):
            svc.register_agent(agent_id, STAKE)
        svc.record_trade("alice", "p1", Side.LONG, None, 100_000, 0, belief=0.1, meta_prediction=0.1)
        svc.record_trade("bob", "p1", Side.LONG, None, 100_000, 0, belief=0.9, meta_prediction=0.9)

        first = svc.settle_epoch("b1", now=T0)
        assert not first.learning_occurred
        assert not first.redistribution_occurred
        assert first.disagreement_entropy == pytest.approx(0.531004, abs=1e-5)
        assert svc.ledger.get_agent("alice").total_stake == STAKE
        assert svc.ledger.get_agent("bob").total_stake == STAKE

        with svc.store.snapshot() as conn:
            total_before = rows.sum_all_stakes(conn) + read_rollover(conn)

        _submit_pair(svc, 1, a=(0.8, 0.85), b=(0.85, 0.8))
        second = svc.settle_epoch("b1", now=T0 + 1)
        assert second.learning_occurred
        assert second.redistribution_occurred
        assert {d.agent_id for d in second.stake_deltas} == {"alice", "bob"}
        with svc.store.snapshot() as conn:
            assert rows.sum_all_stakes(conn) + read_rollover(conn) == total_before

    def test_repeated_near_even_split_moves_no_stake(self, fast_service):
        svc = fast_service
        for agent_id in ("alice", "bob"):
            svc.register_agent(agent_id, STAKE)
        svc.record_trade("alice", "p1", Side.LONG, None, 100_000, 0, belief=0.51, meta_prediction=0.51)
        svc.record_trade("bob", "p1", Side.SHORT, None, 100_000, 0, belief=0.49, meta_prediction=0.49)

        first = svc.settle_epoch("b1", now=T0)
        assert not first.redistribution_occurred
        with svc.store.snapshot() as conn:
            rollover_before = read_rollover(conn)
            locks_before = {a: rows.total_locks(conn, a) for a in ("alice", "bob")}
        assert locks_before == {"alice": 2_000, "bob": 2_000}

        _submit_pair(svc, 1, a=(0.51, 0.51), b=(0.49, 0.49))
        second = svc.settle_epoch("b1", now=T0 + 1)
        assert second.disagreement_entropy == pytest.approx(first.disagreement_entropy)
        assert not second.learning_occurred
        assert not second.redistribution_occurred
        assert second.stake_deltas == []
        assert svc.ledger.get_agent("alice").total_stake == STAKE
        assert svc.ledger.get_agent("bob").total_stake == STAKE
        with svc.store.snapshot() as conn:
            assert read_rollover(conn) == rollover_before
            assert {a: rows.total_locks(conn, a) for a in ("alice", "bob")} == locks_before

    def test_single_participant_not_scored(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            svc = _make_service(tmpdir, min_settle_interval=0, min_new_submissions_for_rebase=1)
            svc.submit_belief("alice", "b1", 0.7, 0.6, 0)
            result = svc.settle_epoch("b1", now=T0)
            assert not result.redistribution_occurred
            assert result.stake_deltas == []


class TestExpiry:
    def test_last_epoch_expires_belief(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            svc = ProtocolService.from_config(
                db_path=Path(tmpdir) / "protocol.db", config_overrides={"min_settle_interval": 0}
            )
            svc.create_belief("b1", "creator", duration_epochs=1, pool_id="p1")
            _submit_pair(svc, 0)
            svc.settle_epoch("b1", now=T0)
            belief = svc.beliefs.get_belief("b1")
            assert belief.status == BeliefStatus.EXPIRED
            assert belief.epoch_state == EpochState.SETTLED
            assert svc.get_rebase_status("b1", now=T0).reason == REASON_REBASE_NOT_ACTIVE
            with pytest.raises(ValidationError):
                svc.submit_belief("alice", "b1", 0.5, 0.5, 1)


class TestProcessDue:
    def test_settles_only_eligible_beliefs(self, fast_service):
        svc = fast_service
        svc.create_belief("b2", "creator", duration_epochs=5, pool_id="p2")
        _submit_pair(svc, 0)
        svc.submit_belief("alice", "b2", 0.3, 0.3, 0)
        results = svc.scheduler.process_due(now=T0)
        assert [r.belief_id for r in results] == ["b1"]
        assert svc.beliefs.get_belief("b2").current_epoch == 0

    def test_duplicate_trigger_is_noop(self, fast_service):
        svc = fast_service
        _submit_pair(svc, 0)
        assert len(svc.scheduler.process_due(now=T0)) == 1
        assert svc.scheduler.process_due(now=T0) == []
