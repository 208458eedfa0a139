"""
Epoch scheduler — per-belief settlement state machine.

    accepting_submissions → eligible_for_settlement → settling → accepting_submissions (epoch + 1)
                                                                 ↘ settled (belief expired)

Eligibility (both read from the live ProtocolConfig snapshot):
  (a) >= min_new_submissions_for_rebase unique submitters in the open epoch
  (b) >= min_settle_interval seconds since the pool's last settlement

settle_epoch:
  1. claim: flip the belief to `settling` with a deadline in its own short
     transaction. A second trigger while the claim is live is refused with
     SettlementInProgress; a claim past its deadline may be taken over.
  2. pipeline: Aggregator (decomposition, weighted-mean fallback) →
     ConsensusScorer → StakeRedistributor, history,
     outbox row and epoch increment in ONE transaction.
  3. on any failure the pipeline transaction rolls back and the belief is
     put back to `eligible_for_settlement` for retry.

An epoch that already settled returns its cached result instead of running
again. Pool price state is not touched here; it moves only when the external
ledger confirms the queued settlement instruction (see external.reconciler).
"""

import json
import logging
import math
import sqlite3
import time
from typing import Optional

from config import PPM, MAX_SETTLEMENTS_PER_CYCLE
from consensus.aggregator import calculate_weights
from consensus.decomposition import aggregate_beliefs
from consensus.redistributor import StakeRedistributor
from consensus.scorer import assess_learning, score_agents
from ledger.collateral import CollateralLedger
from models.errors import NotEligible, ProtocolError, SettlementInProgress
from models.reasons import (
    REASON_EPOCH_MISMATCH,
    REASON_INSUFFICIENT_PARTICIPANTS,
    REASON_NO_LEARNING,
    REASON_REBASE_COOLDOWN,
    REASON_REBASE_INSUFFICIENT_SUBMISSIONS,
    REASON_REBASE_NO_POOL,
    REASON_REBASE_NOT_ACTIVE,
    REASON_REBASE_OK,
    REASON_SETTLEMENT_IN_PROGRESS,
)
from models.types import (
    Belief,
    BeliefStatus,
    EpochState,
    Pool,
    RebaseStatus,
    RedistributionResult,
    SettlementResult,
    SettlementStatus,
)
from ops.run_context import settlement_context
from storage import rows
from storage.config_store import ProtocolConfig, read_rollover
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

# BTS needs at least one peer to score against
MIN_SCORED_PARTICIPANTS = 2


def quantize_ppm(value: float) -> int:
    """Probability → integer parts per million, clamped to [0, PPM]."""
    return min(PPM, max(0, int(round(value * PPM))))


def cooldown_remaining(pool: Optional[Pool], config: ProtocolConfig, now: float) -> int:
    """Whole seconds until the pool may settle again (ceil), 0 if ready."""
    if pool is None or pool.last_settled_at is None:
        return 0
    interval = pool.min_settle_interval if pool.min_settle_interval is not None else config.min_settle_interval
    elapsed = now - pool.last_settled_at
    if elapsed >= interval:
        return 0
    return int(math.ceil(interval - elapsed))


class EpochScheduler:
    """
    Args:
        store: Ledger database
        config: Frozen tunables snapshot, injected at construction
        ledger: Collateral ledger used by the redistributor
    """

    def __init__(self, store: LedgerStore, config: ProtocolConfig, ledger: CollateralLedger) -> None:
        self._store = store
        self._config = config
        self._redistributor = StakeRedistributor(ledger, config)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _status(self, conn: sqlite3.Connection, belief: Belief, now: float) -> RebaseStatus:
        pool = rows.find_pool_for_belief(conn, belief.belief_id)
        submitters = rows.epoch_submitters(conn, belief.belief_id, belief.current_epoch)
        cooldown = cooldown_remaining(pool, self._config, now)
        min_required = self._config.min_new_submissions_for_rebase

        if belief.status != BeliefStatus.ACTIVE:
            reason = REASON_REBASE_NOT_ACTIVE
        elif pool is None:
            reason = REASON_REBASE_NO_POOL
        elif belief.epoch_state == EpochState.SETTLING and (belief.settling_deadline or 0) > now:
            reason = REASON_SETTLEMENT_IN_PROGRESS
        elif len(submitters) < min_required:
            reason = REASON_REBASE_INSUFFICIENT_SUBMISSIONS
        elif cooldown > 0:
            reason = REASON_REBASE_COOLDOWN
        else:
            reason = REASON_REBASE_OK

        return RebaseStatus(
            belief_id=belief.belief_id,
            can_settle=reason == REASON_REBASE_OK,
            unaccounted_submissions=len(submitters),
            min_required=min_required,
            cooldown_remaining_seconds=cooldown,
            current_epoch=belief.current_epoch,
            reason=reason,
        )

    def get_rebase_status(self, belief_id: str, now: Optional[float] = None) -> RebaseStatus:
        """Read-only eligibility report for *belief_id*."""
        now = time.time() if now is None else now
        with self._store.snapshot() as conn:
            belief = rows.load_belief(conn, belief_id)
            return self._status(conn, belief, now)

    def refresh_state(self, belief_id: str, now: Optional[float] = None) -> EpochState:
        """Move accepting ↔ eligible to match the current status and release expired claims."""
        now = time.time() if now is None else now
        with self._store.transaction() as conn:
            belief = rows.load_belief(conn, belief_id)
            if belief.epoch_state == EpochState.SETTLING and (belief.settling_deadline or 0) <= now:
                logger.warning("Settlement claim on belief %s expired, releasing", belief_id)
                belief.epoch_state = EpochState.ELIGIBLE_FOR_SETTLEMENT
                belief.settling_deadline = None
                rows.save_belief(conn, belief)
            if belief.epoch_state in (EpochState.ACCEPTING_SUBMISSIONS, EpochState.ELIGIBLE_FOR_SETTLEMENT):
                status = self._status(conn, belief, now)
                target = EpochState.ELIGIBLE_FOR_SETTLEMENT if status.can_settle else EpochState.ACCEPTING_SUBMISSIONS
                if target != belief.epoch_state:
                    belief.epoch_state = target
                    rows.save_belief(conn, belief)
                    logger.info("Belief %s → %s (%s)", belief_id, target.value, status.reason)
            return belief.epoch_state

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle_epoch(self, belief_id: str, epoch: Optional[int] = None, now: Optional[float] = None) -> SettlementResult:
        """
        Settle the open epoch of *belief_id*.

        Args:
            epoch: Epoch the caller believes is open. An already-settled epoch
                returns the cached result; a future epoch is refused.

        Raises:
            NotEligible: gating failed (carries cooldown_remaining)
            SettlementInProgress: another worker holds a live claim
        """
        now = time.time() if now is None else now

        cached = self._cached_result(belief_id, epoch)
        if cached is not None:
            return cached

        claimed_epoch, deadline = self._claim(belief_id, epoch, now)
        with settlement_context(belief_id, claimed_epoch):
            try:
                with self._store.transaction() as conn:
                    result = self._run_pipeline(conn, belief_id, claimed_epoch, deadline, now)
            except Exception:
                logger.error("Settlement failed for belief=%s epoch=%d", belief_id, claimed_epoch, exc_info=True)
                self._release_claim(belief_id, deadline)
                raise

        logger.info(
            "Settled belief=%s epoch=%d aggregate=%.6f (%s) certainty=%.6f ppm=%d redistribution=%s",
            belief_id,
            claimed_epoch,
            result.new_aggregate,
            result.aggregation_method.value,
            result.certainty,
            result.bd_score_ppm,
            result.redistribution_occurred,
        )
        return result

    def _cached_result(self, belief_id: str, epoch: Optional[int]) -> Optional[SettlementResult]:
        with self._store.snapshot() as conn:
            belief = rows.load_belief(conn, belief_id)
            if epoch is None or belief.last_processed_epoch is None or epoch > belief.last_processed_epoch:
                return None
            row = conn.execute(
                "SELECT result_json FROM belief_relevance_history WHERE belief_id = ? AND epoch = ?",
                (belief_id, epoch),
            ).fetchone()
        if row is None:
            return None
        logger.info("Epoch %d of belief %s already settled, returning cached result", epoch, belief_id)
        result = SettlementResult.from_dict(json.loads(row["result_json"]))
        result.cached = True
        return result

    def _claim(self, belief_id: str, epoch: Optional[int], now: float) -> tuple[int, float]:
        with self._store.transaction() as conn:
            belief = rows.load_belief(conn, belief_id)
            if epoch is not None and epoch != belief.current_epoch:
                raise NotEligible(
                    f"epoch {epoch} is not the open epoch {belief.current_epoch}", REASON_EPOCH_MISMATCH
                )
            if belief.epoch_state == EpochState.SETTLING:
                if (belief.settling_deadline or 0) > now:
                    raise SettlementInProgress(f"belief {belief_id} is already settling")
                logger.warning("Taking over stale settlement claim for belief %s", belief_id)
                belief.epoch_state = EpochState.ELIGIBLE_FOR_SETTLEMENT

            status = self._status(conn, belief, now)
            if not status.can_settle:
                raise NotEligible(
                    f"belief {belief_id} not eligible: {status.reason}",
                    status.reason,
                    cooldown_remaining=status.cooldown_remaining_seconds,
                )

            deadline = now + self._config.settle_claim_timeout
            belief.epoch_state = EpochState.SETTLING
            belief.settling_deadline = deadline
            rows.save_belief(conn, belief)
            return belief.current_epoch, deadline

    def _release_claim(self, belief_id: str, deadline: float) -> None:
        with self._store.transaction() as conn:
            belief = rows.load_belief(conn, belief_id)
            if belief.epoch_state == EpochState.SETTLING and belief.settling_deadline == deadline:
                belief.epoch_state = EpochState.ELIGIBLE_FOR_SETTLEMENT
                belief.settling_deadline = None
                rows.save_belief(conn, belief)

    def _run_pipeline(
        self,
        conn: sqlite3.Connection,
        belief_id: str,
        epoch: int,
        deadline: float,
        now: float,
    ) -> SettlementResult:
        belief = rows.load_belief(conn, belief_id)
        if belief.epoch_state != EpochState.SETTLING or belief.settling_deadline != deadline:
            raise SettlementInProgress(f"lost settlement claim for belief {belief_id}")
        pool = rows.find_pool_for_belief(conn, belief_id)

        submissions = rows.latest_submissions(conn, belief_id)
        weights = calculate_weights(conn, pool.pool_id, list(submissions))
        aggregation = aggregate_beliefs(submissions, weights, epoch, self._config.decomposition_quality_threshold)
        learning = assess_learning(
            belief.previous_disagreement_entropy,
            aggregation.jensen_shannon_disagreement_entropy,
            self._config.learning_threshold,
        )

        participants = aggregation.active_agent_indicators
        if len(participants) < MIN_SCORED_PARTICIPANTS:
            logger.info("Skipping scoring: %d participant(s) (%s)", len(participants), REASON_INSUFFICIENT_PARTICIPANTS)
            redistribution = RedistributionResult(redistribution_occurred=False, rollover_after=read_rollover(conn))
        elif not learning.learning_occurred:
            logger.info(
                "No learning: D %.6f → %.6f (%s)",
                learning.previous_entropy,
                learning.current_entropy,
                REASON_NO_LEARNING,
            )
            redistribution = RedistributionResult(redistribution_occurred=False, rollover_after=read_rollover(conn))
        else:
            scoring = score_agents(aggregation, submissions)
            redistribution = self._redistributor.redistribute(
                conn, belief_id, epoch, pool.pool_id, scoring.information_scores, aggregation.certainty
            )

        rows.deactivate_submissions(conn, belief_id, epoch)

        bd_score_ppm = quantize_ppm(aggregation.aggregate)
        next_epoch = epoch + 1
        result = SettlementResult(
            belief_id=belief_id,
            epoch=epoch,
            next_epoch=next_epoch,
            new_aggregate=aggregation.aggregate,
            certainty=aggregation.certainty,
            disagreement_entropy=aggregation.jensen_shannon_disagreement_entropy,
            bd_score_ppm=bd_score_ppm,
            learning_occurred=learning.learning_occurred,
            redistribution_occurred=redistribution.redistribution_occurred,
            stake_deltas=redistribution.stake_deltas,
            rollover_after=redistribution.rollover_after,
            aggregation_method=aggregation.method,
            decomposition_quality=aggregation.decomposition_quality,
        )

        conn.execute(
            """
            INSERT INTO belief_relevance_history (belief_id, epoch, aggregate, certainty, disagreement_entropy,
                                                  bd_score_ppm, learning_occurred, redistribution_occurred,
                                                  result_json, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                belief_id,
                epoch,
                result.new_aggregate,
                result.certainty,
                result.disagreement_entropy,
                bd_score_ppm,
                int(result.learning_occurred),
                int(result.redistribution_occurred),
                json.dumps(result.to_dict()),
                now,
            ),
        )
        conn.execute(
            """
            INSERT INTO pending_settlements (belief_id, epoch, pool_id, bd_score_ppm, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (belief_id, epoch, pool.pool_id, bd_score_ppm, SettlementStatus.PENDING.value, now, now),
        )

        pool.last_settled_at = now
        rows.save_pool(conn, pool)

        belief.previous_aggregate = aggregation.aggregate
        belief.previous_disagreement_entropy = aggregation.jensen_shannon_disagreement_entropy
        belief.disagreement_entropy = aggregation.jensen_shannon_disagreement_entropy
        belief.certainty = aggregation.certainty
        belief.last_processed_epoch = epoch
        belief.current_epoch = next_epoch
        belief.settling_deadline = None
        if next_epoch >= belief.expiration_epoch:
            belief.status = BeliefStatus.EXPIRED
            belief.epoch_state = EpochState.SETTLED
            logger.info("Belief %s expired after epoch %d", belief_id, epoch)
        else:
            belief.epoch_state = EpochState.ACCEPTING_SUBMISSIONS
        rows.save_belief(conn, belief)
        return result

    # ------------------------------------------------------------------
    # Cron entry point
    # ------------------------------------------------------------------

    def process_due(self, now: Optional[float] = None, limit: int = MAX_SETTLEMENTS_PER_CYCLE) -> list[SettlementResult]:
        """Settle every belief that is eligible right now. Duplicate triggers are no-ops."""
        now = time.time() if now is None else now
        with self._store.snapshot() as conn:
            belief_ids = rows.list_active_belief_ids(conn)

        results = []
        for belief_id in belief_ids:
            if len(results) >= limit:
                break
            if self.refresh_state(belief_id, now) != EpochState.ELIGIBLE_FOR_SETTLEMENT:
                continue
            try:
                results.append(self.settle_epoch(belief_id, now=now))
            except NotEligible as e:
                logger.debug("Skip belief %s: %s", belief_id, e.reason)
            except ProtocolError as e:
                logger.error("Settlement of belief %s rejected: %s", belief_id, e.reason)
        return results
