"""
Trade recorder — the single entry point for buys and sells.

One call is one transaction:
  1. price the trade against the pool mirror (DualReserveAMM)
  2. ask the CollateralLedger for the required lock and skim
  3. reject with InsufficientCollateral if the supplied skim falls short
  4. otherwise write balance, lock, stake, pool state, the trade row and the
     trader's belief submission for the live epoch together

Trades on one (agent, pool, side) are serialized; a rejected trade leaves no
trace. A trade re-delivered with the same tx_signature returns the stored
result instead of applying twice.
"""

import logging
import sqlite3
import time
import uuid
from dataclasses import replace
from typing import Optional

from amm.dual_reserve import compute_buy, compute_sell, pool_snapshot
from ledger.collateral import CollateralLedger
from ledger.keyed_locks import KeyedLockRegistry
from models.errors import InsufficientCollateral, ValidationError, require_probability
from models.reasons import REASON_NEGATIVE_AMOUNT, REASON_ZERO_AMOUNT
from models.types import BeliefStatus, Position, Side, TradeResult, TradeType
from storage import rows
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


def _validate_amounts(trade_type: TradeType, token_amount: Optional[int], notional: Optional[int], supplied_skim: int) -> None:
    for label, value in (("token_amount", token_amount), ("notional", notional), ("supplied_skim", supplied_skim)):
        if value is not None and value < 0:
            raise ValidationError(f"{label} cannot be negative", REASON_NEGATIVE_AMOUNT)
    if trade_type == TradeType.BUY and not notional:
        raise ValidationError("buy requires a positive notional", REASON_ZERO_AMOUNT)
    if trade_type == TradeType.SELL and not token_amount:
        raise ValidationError("sell requires a positive token_amount", REASON_ZERO_AMOUNT)


def _trade_result_from_row(row: sqlite3.Row) -> TradeResult:
    return TradeResult(
        trade_id=row["trade_id"],
        agent_id=row["agent_id"],
        pool_id=row["pool_id"],
        side=Side(row["side"]),
        trade_type=TradeType(row["trade_type"]),
        token_amount=row["token_amount"],
        notional=row["notional"],
        new_balance=row["balance_after"],
        new_lock=row["lock_after"],
        skim_applied=row["skim_amount"],
        submission_id=row["submission_id"],
        duplicate=True,
    )


class TradeRecorder:
    def __init__(self, store: LedgerStore, ledger: CollateralLedger, locks: Optional[KeyedLockRegistry] = None) -> None:
        self._store = store
        self._ledger = ledger
        self._locks = locks or KeyedLockRegistry()

    def quote_trade(
        self,
        agent_id: str,
        pool_id: str,
        side: Side,
        notional: Optional[int] = None,
        token_amount: Optional[int] = None,
        trade_type: TradeType = TradeType.BUY,
    ) -> dict:
        """Dry run: the amounts and skim a trade would need right now. Mutates nothing."""
        _validate_amounts(trade_type, token_amount, notional, 0)
        with self._store.snapshot() as conn:
            pool = rows.load_pool(conn, pool_id)
            if trade_type == TradeType.BUY:
                _, token_amount = compute_buy(pool, side, notional, token_amount)
            else:
                _, notional = compute_sell(pool, side, token_amount, notional)
            projection = self._ledger.project_required_lock(
                conn, agent_id, pool_id, side, notional, trade_type, token_amount
            )
        return {
            "token_amount": token_amount,
            "notional": notional,
            "lock_before": projection.lock_before,
            "lock_after": projection.lock_after,
            "required_skim": projection.required_skim,
            "skim_rate": projection.skim_rate,
            "underwater_deficit": projection.underwater_deficit,
        }

    def record_trade(
        self,
        agent_id: str,
        pool_id: str,
        side: Side,
        token_amount: Optional[int],
        notional: Optional[int],
        supplied_skim: int,
        trade_type: TradeType = TradeType.BUY,
        belief: Optional[float] = None,
        meta_prediction: Optional[float] = None,
        tx_signature: Optional[str] = None,
    ) -> TradeResult:
        """
        Record one confirmed trade atomically.

        Args:
            token_amount: Tokens minted (buy) or burned (sell); None -> curve quote
            notional: Currency paid (buy) or received (sell); None -> curve quote
            supplied_skim: Collateral sent with the trade, credited to stake
            belief, meta_prediction: Trader's statement for the live epoch;
                defaults to their latest submission, else the post-trade
                implied relevance

        Raises:
            InsufficientCollateral: supplied_skim below the required skim
            CollateralCapExceeded: required skim above max_skim_rate
            InvariantViolation: commit would under-collateralize the agent
        """
        side = Side(side)
        trade_type = TradeType(trade_type)
        _validate_amounts(trade_type, token_amount, notional, supplied_skim)
        if belief is not None:
            belief = require_probability("belief", belief)
        if meta_prediction is not None:
            meta_prediction = require_probability("meta_prediction", meta_prediction)

        with self._locks.hold((agent_id, pool_id, side)):
            with self._store.transaction() as conn:
                if tx_signature:
                    row = conn.execute("SELECT * FROM trades WHERE tx_signature = ?", (tx_signature,)).fetchone()
                    if row is not None:
                        logger.info("Trade %s already recorded, returning stored result", tx_signature)
                        return _trade_result_from_row(row)
                return self._record_in_tx(
                    conn, agent_id, pool_id, side, token_amount, notional, supplied_skim,
                    trade_type, belief, meta_prediction, tx_signature,
                )

    def _record_in_tx(
        self,
        conn: sqlite3.Connection,
        agent_id: str,
        pool_id: str,
        side: Side,
        token_amount: Optional[int],
        notional: Optional[int],
        supplied_skim: int,
        trade_type: TradeType,
        belief: Optional[float],
        meta_prediction: Optional[float],
        tx_signature: Optional[str],
    ) -> TradeResult:
        rows.insert_agent(conn, agent_id)
        pool = rows.load_pool(conn, pool_id)

        if trade_type == TradeType.BUY:
            new_pool, token_amount = compute_buy(pool, side, notional, token_amount)
        else:
            new_pool, notional = compute_sell(pool, side, token_amount, notional)

        projection = self._ledger.project_required_lock(
            conn, agent_id, pool_id, side, notional, trade_type, token_amount
        )
        if supplied_skim < projection.required_skim:
            shortfall = projection.required_skim - supplied_skim
            logger.warning(
                "Trade rejected agent=%s pool=%s side=%s: skim %d < required %d",
                agent_id,
                pool_id,
                side.value,
                supplied_skim,
                projection.required_skim,
            )
            raise InsufficientCollateral(
                shortfall=shortfall, required_skim=projection.required_skim, supplied_skim=supplied_skim
            )

        position = rows.load_position(conn, agent_id, pool_id, side)
        new_position = self._next_position(position, trade_type, token_amount, notional, projection.lock_after)

        key = (pool_id, side)
        self._ledger.commit(
            conn,
            agent_id,
            {key: projection.lock_after - projection.lock_before},
            supplied_skim,
            positions={key: new_position},
        )
        rows.save_pool(conn, new_pool)

        submission_id = self._restate_belief(conn, agent_id, new_pool, belief, meta_prediction)

        trade_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO trades (trade_id, tx_signature, agent_id, pool_id, side, trade_type, token_amount,
                                notional, skim_amount, lock_before, lock_after, balance_after,
                                submission_id, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade_id,
                tx_signature,
                agent_id,
                pool_id,
                side.value,
                trade_type.value,
                token_amount,
                notional,
                supplied_skim,
                projection.lock_before,
                projection.lock_after,
                new_position.token_balance,
                submission_id,
                time.time(),
            ),
        )

        logger.info(
            "Trade recorded %s agent=%s pool=%s side=%s tokens=%d notional=%d lock %d->%d skim=%d",
            trade_type.value,
            agent_id,
            pool_id,
            side.value,
            token_amount,
            notional,
            projection.lock_before,
            projection.lock_after,
            supplied_skim,
        )
        return TradeResult(
            trade_id=trade_id,
            agent_id=agent_id,
            pool_id=pool_id,
            side=side,
            trade_type=trade_type,
            token_amount=token_amount,
            notional=notional,
            new_balance=new_position.token_balance,
            new_lock=new_position.belief_lock,
            skim_applied=supplied_skim,
            submission_id=submission_id,
        )

    @staticmethod
    def _next_position(position: Position, trade_type: TradeType, token_amount: int, notional: int, lock_after: int) -> Position:
        if trade_type == TradeType.BUY:
            return replace(
                position,
                token_balance=position.token_balance + token_amount,
                cost_basis=position.cost_basis + notional,
                belief_lock=lock_after,
                last_buy_amount=notional,
            )
        balance_after = position.token_balance - token_amount
        cost_after = position.cost_basis * balance_after // position.token_balance if balance_after else 0
        return replace(position, token_balance=balance_after, cost_basis=cost_after, belief_lock=lock_after)

    @staticmethod
    def _restate_belief(
        conn: sqlite3.Connection,
        agent_id: str,
        pool,
        belief: Optional[float],
        meta_prediction: Optional[float],
    ) -> Optional[str]:
        belief_row = rows.load_belief(conn, pool.belief_id)
        if belief_row.status != BeliefStatus.ACTIVE:
            return None
        if belief is None or meta_prediction is None:
            latest = rows.latest_submissions(conn, pool.belief_id).get(agent_id)
            if latest is not None:
                belief, meta_prediction = latest.belief, latest.meta_prediction
            else:
                implied = pool_snapshot(pool)["implied_relevance"]
                belief, meta_prediction = implied, implied
        return rows.upsert_submission(
            conn, agent_id, pool.belief_id, belief_row.current_epoch, belief, meta_prediction
        )
