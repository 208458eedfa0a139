"""
Collateral ledger — agent stake and per-position belief locks.

Invariant: for every agent, total_stake >= sum(belief_lock) over open
positions. Any commit that would break it while making things worse is
rejected with InvariantViolation, never clamped.

Lock rules:
  - Buy: the side's lock is replaced by floor(cost_basis_after * base_skim_rate),
    the lock for the whole position after the trade. A buy never lowers it.
  - Sell: lock shrinks with the balance, lock * after / before (ceil while
    the position stays open, zero once it closes)
  - Required skim = max(0, locks_elsewhere + new_lock - total_stake), so an
    underwater agent pays its deficit on the next buy. Past max_skim_rate of
    the trade notional the buy is refused outright.
"""

import logging
import sqlite3
from dataclasses import replace
from typing import Optional

from models.errors import CollateralCapExceeded, InvariantViolation, ValidationError
from models.reasons import REASON_NEGATIVE_AMOUNT, REASON_OVERSELL
from models.types import Agent, LockProjection, Position, Side, TradeType, UnderwaterCheck
from storage import rows
from storage.config_store import ProtocolConfig
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

BPS = 10_000


def base_lock(notional: int, base_skim_bps: int) -> int:
    """
    Lock required for a buy of *notional* at the base rate (floor).

    Examples:
        >>> base_lock(100, 200)
        2
        >>> base_lock(510_000, 200)
        10200
    """
    return notional * base_skim_bps // BPS


def proportional_lock(lock_before: int, balance_before: int, balance_after: int) -> int:
    """
    Lock after selling down from *balance_before* to *balance_after*.

    Rounds up while tokens remain so a partial exit never frees the whole
    lock; closing the position releases it entirely.

    Examples:
        >>> proportional_lock(2, 1000, 500)
        1
        >>> proportional_lock(2, 1000, 0)
        0
    """
    if balance_after <= 0 or balance_before <= 0:
        return 0
    return -(-lock_before * balance_after // balance_before)


class CollateralLedger:
    """
    Args:
        store: Ledger database
        config: Frozen protocol tunables (skim rates)
    """

    def __init__(self, store: LedgerStore, config: ProtocolConfig) -> None:
        self._store = store
        self._config = config

    @property
    def config(self) -> ProtocolConfig:
        return self._config

    # ------------------------------------------------------------------
    # Agents and stake
    # ------------------------------------------------------------------

    def register_agent(self, agent_id: str, initial_stake: int = 0) -> Agent:
        if initial_stake < 0:
            raise ValidationError("initial stake cannot be negative", REASON_NEGATIVE_AMOUNT)
        with self._store.transaction() as conn:
            rows.insert_agent(conn, agent_id, initial_stake)
            return rows.load_agent(conn, agent_id)

    def get_agent(self, agent_id: str) -> Agent:
        with self._store.snapshot() as conn:
            return rows.load_agent(conn, agent_id)

    def get_positions(self, agent_id: str, open_only: bool = True) -> list[Position]:
        with self._store.snapshot() as conn:
            return rows.load_agent_positions(conn, agent_id, open_only=open_only)

    def deposit(self, agent_id: str, amount: int, conn: Optional[sqlite3.Connection] = None) -> Agent:
        if amount <= 0:
            raise ValidationError("deposit must be positive", REASON_NEGATIVE_AMOUNT)
        if conn is None:
            with self._store.transaction() as tx:
                return self.deposit(agent_id, amount, conn=tx)
        self.commit(conn, agent_id, {}, amount)
        logger.info("Deposit agent=%s amount=%d", agent_id, amount)
        return rows.load_agent(conn, agent_id)

    def withdraw(self, agent_id: str, amount: int, conn: Optional[sqlite3.Connection] = None) -> Agent:
        """Withdraw free stake. Raises InvariantViolation if it would dip into locked collateral."""
        if amount <= 0:
            raise ValidationError("withdrawal must be positive", REASON_NEGATIVE_AMOUNT)
        if conn is None:
            with self._store.transaction() as tx:
                return self.withdraw(agent_id, amount, conn=tx)
        self.commit(conn, agent_id, {}, -amount)
        logger.info("Withdraw agent=%s amount=%d", agent_id, amount)
        return rows.load_agent(conn, agent_id)

    def check_underwater(self, agent_id: str, conn: Optional[sqlite3.Connection] = None) -> UnderwaterCheck:
        if conn is None:
            with self._store.snapshot() as snap:
                return self.check_underwater(agent_id, conn=snap)
        agent = rows.load_agent(conn, agent_id)
        return UnderwaterCheck(agent_id=agent_id, total_stake=agent.total_stake, total_locks=rows.total_locks(conn, agent_id))

    # ------------------------------------------------------------------
    # Lock projection
    # ------------------------------------------------------------------

    def project_required_lock(
        self,
        conn: sqlite3.Connection,
        agent_id: str,
        pool_id: str,
        side: Side,
        trade_notional: int,
        trade_type: TradeType = TradeType.BUY,
        token_amount: int = 0,
    ) -> LockProjection:
        """
        Minimum lock (and skim) the ledger will accept for this trade.

        Raises CollateralCapExceeded when the skim needed to cover the new
        lock plus any existing deficit exceeds max_skim_rate of the notional.
        """
        if trade_notional < 0 or token_amount < 0:
            raise ValidationError("trade amounts cannot be negative", REASON_NEGATIVE_AMOUNT)

        agent = rows.load_agent(conn, agent_id, missing_ok=True)
        position = rows.load_position(conn, agent_id, pool_id, side)
        locks_total = rows.total_locks(conn, agent_id)
        deficit = max(0, locks_total - agent.total_stake)

        if trade_type == TradeType.SELL:
            if token_amount > position.token_balance:
                raise ValidationError(
                    f"sell of {token_amount} exceeds balance {position.token_balance}", REASON_OVERSELL
                )
            lock_after = proportional_lock(
                position.belief_lock, position.token_balance, position.token_balance - token_amount
            )
            return LockProjection(
                lock_before=position.belief_lock,
                lock_after=lock_after,
                underwater_deficit=deficit,
                required_skim=0,
                skim_rate=0.0,
            )

        lock_after = max(
            position.belief_lock,
            base_lock(position.cost_basis + trade_notional, self._config.base_skim_bps),
        )
        locks_elsewhere = locks_total - position.belief_lock
        required_skim = max(0, locks_elsewhere + lock_after - agent.total_stake)
        skim_rate = required_skim / trade_notional if trade_notional else 0.0

        if required_skim * BPS > round(self._config.max_skim_rate * BPS) * trade_notional:
            positions = rows.load_agent_positions(conn, agent_id)
            logger.warning(
                "Skim cap exceeded agent=%s pool=%s rate=%.4f deficit=%d",
                agent_id,
                pool_id,
                skim_rate,
                deficit,
            )
            raise CollateralCapExceeded(
                deficit=deficit,
                skim_rate=skim_rate,
                max_skim_rate=self._config.max_skim_rate,
                positions=positions,
            )

        return LockProjection(
            lock_before=position.belief_lock,
            lock_after=lock_after,
            underwater_deficit=deficit,
            required_skim=required_skim,
            skim_rate=skim_rate,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(
        self,
        conn: sqlite3.Connection,
        agent_id: str,
        locks_delta: dict[tuple[str, Side], int],
        stake_delta: int,
        positions: Optional[dict[tuple[str, Side], Position]] = None,
    ) -> Agent:
        """
        Apply lock and stake deltas inside the caller's transaction.

        *locks_delta* maps (pool_id, side) to a signed lock change.
        *positions* optionally carries the full post-trade position rows for
        the same keys (balance and cost basis move with the lock).

        A mutation that leaves stake below locks is rejected unless the
        agent was already that far underwater and the mutation does not
        widen the gap, so an agent made underwater by a mirrored external
        event can still sell down or absorb a penalty.
        """
        agent = rows.load_agent(conn, agent_id)
        locks_before = rows.total_locks(conn, agent_id)
        lock_change = sum(locks_delta.values())
        stake_after = agent.total_stake + stake_delta
        locks_after = locks_before + lock_change

        if stake_after < 0:
            raise InvariantViolation(f"stake for {agent_id} would go negative ({stake_after})")
        deficit_before = max(0, locks_before - agent.total_stake)
        deficit_after = max(0, locks_after - stake_after)
        if deficit_after > deficit_before:
            raise InvariantViolation(
                f"stake {stake_after} below locks {locks_after} for {agent_id} "
                f"(stake_delta={stake_delta}, lock_delta={lock_change})"
            )

        for (pool_id, side), delta in locks_delta.items():
            current = rows.load_position(conn, agent_id, pool_id, side)
            target = (positions or {}).get((pool_id, side))
            if target is None:
                target = replace(current, belief_lock=current.belief_lock + delta)
            elif target.belief_lock != current.belief_lock + delta:
                raise InvariantViolation(f"position lock mismatch for {agent_id}/{pool_id}/{side.value}")
            if target.belief_lock < 0:
                raise InvariantViolation(f"negative lock for {agent_id}/{pool_id}/{side.value}")
            if target.token_balance == 0 and target.belief_lock != 0:
                raise InvariantViolation(f"closed position keeps a lock for {agent_id}/{pool_id}/{side.value}")
            rows.save_position(conn, target)

        for key, target in (positions or {}).items():
            if key not in locks_delta:
                rows.save_position(conn, target)

        if stake_delta:
            rows.set_agent_stake(conn, agent_id, stake_after)
        agent.total_stake = stake_after
        return agent
