"""
Zero-sum stake redistribution.

Per scored agent, with effective stake = the agent's belief locks on the pool:
  - score < 0: penalty rate min(|score| * certainty, penalty_rate_cap)
  - score = 0: penalty rate neutral_skim_rate
  - score > 0: no penalty, shares the pot by score * certainty

pot = rollover + sum(penalties). With no winner the whole pot rolls over to
the next epoch. The new rollover value is written before any stake moves.
Penalties come out of stake and locks together so the collateral invariant
survives; rewards are split by largest remainder so the pot is paid out to
the last micro-unit.

Conservation: sum(total_stake) + rollover is identical before and after.
"""

import logging
import sqlite3
import time
from typing import Mapping

from config import PPM
from consensus.scorer import SCORE_EPSILON
from ledger.collateral import CollateralLedger
from models.errors import InvariantViolation
from models.reasons import REASON_NO_WINNERS_ROLLOVER
from models.types import RedistributionResult, Side, StakeDelta
from storage import rows
from storage.config_store import ProtocolConfig, read_rollover, write_rollover

logger = logging.getLogger(__name__)

# Integer resolution for reward weights
WEIGHT_SCALE = 10 ** 12


def penalty_rate_ppm(score: float, certainty: float, config: ProtocolConfig) -> int:
    """Penalty rate in ppm for one score; 0 for winners."""
    if score > SCORE_EPSILON:
        return 0
    if score < -SCORE_EPSILON:
        rate = min(abs(score) * certainty, config.penalty_rate_cap)
    else:
        rate = config.neutral_skim_rate
    return int(rate * PPM)


def split_largest_remainder(pot: int, weights: Mapping[str, float]) -> dict[str, int]:
    """
    Split *pot* in proportion to *weights* so the parts sum exactly to *pot*.

    Examples:
        >>> split_largest_remainder(10, {"a": 1.0, "b": 1.0, "c": 1.0})
        {'a': 4, 'b': 3, 'c': 3}
    """
    scaled = {k: int(v * WEIGHT_SCALE) for k, v in weights.items() if v > 0}
    total = sum(scaled.values())
    if pot <= 0 or total <= 0:
        return {k: 0 for k in weights}
    shares = {k: pot * w // total for k, w in scaled.items()}
    leftover = pot - sum(shares.values())
    by_remainder = sorted(scaled, key=lambda k: (-(pot * scaled[k] % total), k))
    for k in by_remainder[:leftover]:
        shares[k] += 1
    return {k: shares.get(k, 0) for k in weights}


def _lock_debits(position_locks: Mapping[Side, int], penalty: int) -> dict[Side, int]:
    """Spread a penalty over the agent's sides on one pool, proportional to each lock."""
    total = sum(position_locks.values())
    if total == 0 or penalty == 0:
        return {}
    sides = sorted(position_locks, key=lambda s: s.value)
    debits: dict[Side, int] = {}
    remaining = penalty
    for side in sides[:-1]:
        debit = min(position_locks[side], penalty * position_locks[side] // total)
        debits[side] = debit
        remaining -= debit
    debits[sides[-1]] = min(position_locks[sides[-1]], remaining)
    return debits


class StakeRedistributor:
    def __init__(self, ledger: CollateralLedger, config: ProtocolConfig) -> None:
        self._ledger = ledger
        self._config = config

    def redistribute(
        self,
        conn: sqlite3.Connection,
        belief_id: str,
        epoch: int,
        pool_id: str,
        information_scores: Mapping[str, float],
        certainty: float,
    ) -> RedistributionResult:
        """Apply one epoch's penalties and rewards inside the caller's transaction."""
        stakes_before_total = rows.sum_all_stakes(conn)
        rollover_before = read_rollover(conn)

        locks_by_agent: dict[str, dict[Side, int]] = {agent_id: {} for agent_id in information_scores}
        for position in rows.load_pool_positions(conn, pool_id):
            if position.agent_id in locks_by_agent and position.belief_lock > 0:
                locks_by_agent[position.agent_id][position.side] = position.belief_lock

        penalties: dict[str, int] = {}
        for agent_id, score in sorted(information_scores.items()):
            effective = sum(locks_by_agent[agent_id].values())
            rate = penalty_rate_ppm(score, certainty, self._config)
            penalty = effective * rate // PPM
            if penalty > 0:
                penalties[agent_id] = penalty

        pot = rollover_before + sum(penalties.values())
        reward_weights = {
            agent_id: score * certainty
            for agent_id, score in information_scores.items()
            if score > SCORE_EPSILON and score * certainty > 0
        }
        rewards = split_largest_remainder(pot, reward_weights) if reward_weights else {}
        paid = sum(rewards.values())
        rollover_after = pot - paid

        # Durable pot first: a retry after a crash sees the pot already moved
        write_rollover(conn, rollover_after)
        if not reward_weights and pot > 0:
            logger.warning(
                "No winners for belief=%s epoch=%d, rolling over %d (%s)",
                belief_id,
                epoch,
                pot,
                REASON_NO_WINNERS_ROLLOVER,
            )

        deltas: list[StakeDelta] = []
        now = time.time()
        for agent_id, score in sorted(information_scores.items()):
            before = rows.load_agent(conn, agent_id).total_stake
            penalty = penalties.get(agent_id, 0)
            reward = rewards.get(agent_id, 0)
            if penalty:
                debits = _lock_debits(locks_by_agent[agent_id], penalty)
                self._ledger.commit(
                    conn, agent_id, {(pool_id, side): -d for side, d in debits.items() if d}, -penalty
                )
            if reward:
                self._ledger.commit(conn, agent_id, {}, reward)
            after = before - penalty + reward
            deltas.append(StakeDelta(agent_id=agent_id, stake_before=before, stake_after=after, information_score=score))
            conn.execute(
                """
                INSERT INTO stake_redistribution_events (belief_id, epoch, agent_id, information_score,
                                                         stake_before, stake_after, stake_delta, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (belief_id, epoch, agent_id, score, before, after, after - before, now),
            )

        stakes_after_total = rows.sum_all_stakes(conn)
        if stakes_after_total + rollover_after != stakes_before_total + rollover_before:
            raise InvariantViolation(
                f"Redistribution not zero-sum for belief={belief_id} epoch={epoch}: "
                f"{stakes_before_total}+{rollover_before} -> {stakes_after_total}+{rollover_after}"
            )

        logger.info(
            "Redistributed belief=%s epoch=%d penalties=%d rewards=%d rollover %d->%d",
            belief_id,
            epoch,
            sum(penalties.values()),
            paid,
            rollover_before,
            rollover_after,
        )
        return RedistributionResult(
            redistribution_occurred=True,
            total_penalty_pot=pot,
            total_rewards=paid,
            rollover_before=rollover_before,
            rollover_after=rollover_after,
            stake_deltas=deltas,
        )
