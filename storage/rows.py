"""
Row mappers between SQLite rows and models.types dataclasses.

All functions take an open connection so callers control the transaction
boundary. Nothing here commits.
"""

import sqlite3
import time
import uuid
from typing import Optional

from models.errors import NotFound
from models.reasons import REASON_UNKNOWN_AGENT, REASON_UNKNOWN_BELIEF, REASON_UNKNOWN_POOL
from models.types import (
    Agent,
    Belief,
    BeliefStatus,
    BeliefSubmission,
    EpochState,
    Pool,
    Position,
    Side,
)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


def insert_agent(conn: sqlite3.Connection, agent_id: str, total_stake: int = 0) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO agents (agent_id, total_stake, created_at) VALUES (?, ?, ?)",
        (agent_id, total_stake, time.time()),
    )


def load_agent(conn: sqlite3.Connection, agent_id: str, missing_ok: bool = False) -> Agent:
    row = conn.execute("SELECT agent_id, total_stake FROM agents WHERE agent_id = ?", (agent_id,)).fetchone()
    if row is None:
        if missing_ok:
            return Agent(agent_id=agent_id)
        raise NotFound(f"Unknown agent {agent_id}", REASON_UNKNOWN_AGENT)
    count = conn.execute(
        "SELECT COUNT(*) FROM positions WHERE agent_id = ? AND token_balance > 0", (agent_id,)
    ).fetchone()[0]
    return Agent(agent_id=row["agent_id"], total_stake=row["total_stake"], active_position_count=count)


def set_agent_stake(conn: sqlite3.Connection, agent_id: str, total_stake: int) -> None:
    conn.execute("UPDATE agents SET total_stake = ? WHERE agent_id = ?", (total_stake, agent_id))


def total_locks(conn: sqlite3.Connection, agent_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(belief_lock), 0) FROM positions WHERE agent_id = ?", (agent_id,)
    ).fetchone()
    return int(row[0])


def sum_all_stakes(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COALESCE(SUM(total_stake), 0) FROM agents").fetchone()[0])


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


def _position_from_row(row: sqlite3.Row) -> Position:
    return Position(
        agent_id=row["agent_id"],
        pool_id=row["pool_id"],
        side=Side(row["side"]),
        token_balance=row["token_balance"],
        belief_lock=row["belief_lock"],
        cost_basis=row["cost_basis"],
        last_buy_amount=row["last_buy_amount"],
    )


def load_position(conn: sqlite3.Connection, agent_id: str, pool_id: str, side: Side) -> Position:
    """Load a position; returns an empty one if the agent never traded this side."""
    row = conn.execute(
        "SELECT * FROM positions WHERE agent_id = ? AND pool_id = ? AND side = ?",
        (agent_id, pool_id, side.value),
    ).fetchone()
    if row is None:
        return Position(agent_id=agent_id, pool_id=pool_id, side=side)
    return _position_from_row(row)


def load_agent_positions(conn: sqlite3.Connection, agent_id: str, open_only: bool = True) -> list[Position]:
    sql = "SELECT * FROM positions WHERE agent_id = ?"
    if open_only:
        sql += " AND token_balance > 0"
    return [_position_from_row(r) for r in conn.execute(sql + " ORDER BY pool_id, side", (agent_id,))]


def load_pool_positions(conn: sqlite3.Connection, pool_id: str) -> list[Position]:
    rows = conn.execute(
        "SELECT * FROM positions WHERE pool_id = ? AND token_balance > 0 ORDER BY agent_id, side", (pool_id,)
    )
    return [_position_from_row(r) for r in rows]


def save_position(conn: sqlite3.Connection, position: Position) -> None:
    conn.execute(
        """
        INSERT INTO positions (agent_id, pool_id, side, token_balance, belief_lock, cost_basis,
                               last_buy_amount, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (agent_id, pool_id, side) DO UPDATE SET
            token_balance = excluded.token_balance,
            belief_lock = excluded.belief_lock,
            cost_basis = excluded.cost_basis,
            last_buy_amount = excluded.last_buy_amount,
            updated_at = excluded.updated_at
        """,
        (
            position.agent_id,
            position.pool_id,
            position.side.value,
            position.token_balance,
            position.belief_lock,
            position.cost_basis,
            position.last_buy_amount,
            time.time(),
        ),
    )


# ---------------------------------------------------------------------------
# Beliefs
# ---------------------------------------------------------------------------


def insert_belief(conn: sqlite3.Connection, belief: Belief) -> None:
    conn.execute(
        """
        INSERT INTO beliefs (belief_id, creator, pool_id, status, epoch_state, current_epoch,
                             expiration_epoch, previous_aggregate, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            belief.belief_id,
            belief.creator,
            belief.pool_id,
            belief.status.value,
            belief.epoch_state.value,
            belief.current_epoch,
            belief.expiration_epoch,
            belief.previous_aggregate,
            time.time(),
        ),
    )


def load_belief(conn: sqlite3.Connection, belief_id: str) -> Belief:
    row = conn.execute("SELECT * FROM beliefs WHERE belief_id = ?", (belief_id,)).fetchone()
    if row is None:
        raise NotFound(f"Unknown belief {belief_id}", REASON_UNKNOWN_BELIEF)
    return Belief(
        belief_id=row["belief_id"],
        creator=row["creator"],
        pool_id=row["pool_id"],
        status=BeliefStatus(row["status"]),
        epoch_state=EpochState(row["epoch_state"]),
        current_epoch=row["current_epoch"],
        expiration_epoch=row["expiration_epoch"],
        previous_aggregate=row["previous_aggregate"],
        previous_disagreement_entropy=row["previous_disagreement_entropy"],
        certainty=row["certainty"],
        disagreement_entropy=row["disagreement_entropy"],
        last_processed_epoch=row["last_processed_epoch"],
        settling_deadline=row["settling_deadline"],
    )


def list_active_belief_ids(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        "SELECT belief_id FROM beliefs WHERE status = ? AND pool_id IS NOT NULL ORDER BY created_at",
        (BeliefStatus.ACTIVE.value,),
    )
    return [r["belief_id"] for r in rows]


def save_belief(conn: sqlite3.Connection, belief: Belief) -> None:
    conn.execute(
        """
        UPDATE beliefs SET
            pool_id = ?, status = ?, epoch_state = ?, current_epoch = ?, expiration_epoch = ?,
            previous_aggregate = ?, previous_disagreement_entropy = ?, certainty = ?,
            disagreement_entropy = ?, last_processed_epoch = ?, settling_deadline = ?
        WHERE belief_id = ?
        """,
        (
            belief.pool_id,
            belief.status.value,
            belief.epoch_state.value,
            belief.current_epoch,
            belief.expiration_epoch,
            belief.previous_aggregate,
            belief.previous_disagreement_entropy,
            belief.certainty,
            belief.disagreement_entropy,
            belief.last_processed_epoch,
            belief.settling_deadline,
            belief.belief_id,
        ),
    )


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


def _submission_from_row(row: sqlite3.Row) -> BeliefSubmission:
    return BeliefSubmission(
        submission_id=row["submission_id"],
        agent_id=row["agent_id"],
        belief_id=row["belief_id"],
        epoch=row["epoch"],
        belief=row["belief"],
        meta_prediction=row["meta_prediction"],
        is_active=bool(row["is_active"]),
    )


def upsert_submission(
    conn: sqlite3.Connection,
    agent_id: str,
    belief_id: str,
    epoch: int,
    belief: float,
    meta_prediction: float,
) -> str:
    """Insert or overwrite the agent's submission for this epoch. Returns the submission id."""
    now = time.time()
    row = conn.execute(
        "SELECT submission_id FROM belief_submissions WHERE agent_id = ? AND belief_id = ? AND epoch = ?",
        (agent_id, belief_id, epoch),
    ).fetchone()
    if row is not None:
        conn.execute(
            """
            UPDATE belief_submissions SET belief = ?, meta_prediction = ?, is_active = 1, updated_at = ?
            WHERE submission_id = ?
            """,
            (belief, meta_prediction, now, row["submission_id"]),
        )
        return row["submission_id"]

    submission_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO belief_submissions (submission_id, agent_id, belief_id, epoch, belief,
                                        meta_prediction, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (submission_id, agent_id, belief_id, epoch, belief, meta_prediction, now, now),
    )
    return submission_id


def latest_submissions(conn: sqlite3.Connection, belief_id: str) -> dict[str, BeliefSubmission]:
    """Most recent submission per agent across every epoch of the belief."""
    rows = conn.execute(
        """
        SELECT s.* FROM belief_submissions s
        JOIN (
            SELECT agent_id, MAX(epoch) AS max_epoch
            FROM belief_submissions WHERE belief_id = ? GROUP BY agent_id
        ) latest ON latest.agent_id = s.agent_id AND latest.max_epoch = s.epoch
        WHERE s.belief_id = ?
        ORDER BY s.agent_id
        """,
        (belief_id, belief_id),
    )
    return {r["agent_id"]: _submission_from_row(r) for r in rows}


def epoch_submitters(conn: sqlite3.Connection, belief_id: str, epoch: int) -> list[str]:
    rows = conn.execute(
        "SELECT DISTINCT agent_id FROM belief_submissions WHERE belief_id = ? AND epoch = ? ORDER BY agent_id",
        (belief_id, epoch),
    )
    return [r["agent_id"] for r in rows]


def deactivate_submissions(conn: sqlite3.Connection, belief_id: str, epoch: int) -> None:
    conn.execute(
        "UPDATE belief_submissions SET is_active = 0 WHERE belief_id = ? AND epoch = ?",
        (belief_id, epoch),
    )


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------


def insert_pool(conn: sqlite3.Connection, pool: Pool) -> None:
    conn.execute(
        """
        INSERT INTO pools (pool_id, belief_id, r_long, r_short, supply_long, supply_short,
                           k_long_x96, k_short_x96, sqrt_price_long_x96, sqrt_price_short_x96,
                           last_settlement_epoch, last_settled_at, min_settle_interval, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            pool.pool_id,
            pool.belief_id,
            pool.r_long,
            pool.r_short,
            pool.supply_long,
            pool.supply_short,
            str(pool.k_long_x96),
            str(pool.k_short_x96),
            str(pool.sqrt_price_long_x96),
            str(pool.sqrt_price_short_x96),
            pool.last_settlement_epoch,
            pool.last_settled_at,
            pool.min_settle_interval,
            time.time(),
        ),
    )


def load_pool(conn: sqlite3.Connection, pool_id: str) -> Pool:
    row = conn.execute("SELECT * FROM pools WHERE pool_id = ?", (pool_id,)).fetchone()
    if row is None:
        raise NotFound(f"Unknown pool {pool_id}", REASON_UNKNOWN_POOL)
    return Pool(
        pool_id=row["pool_id"],
        belief_id=row["belief_id"],
        r_long=row["r_long"],
        r_short=row["r_short"],
        supply_long=row["supply_long"],
        supply_short=row["supply_short"],
        k_long_x96=int(row["k_long_x96"]),
        k_short_x96=int(row["k_short_x96"]),
        sqrt_price_long_x96=int(row["sqrt_price_long_x96"]),
        sqrt_price_short_x96=int(row["sqrt_price_short_x96"]),
        last_settlement_epoch=row["last_settlement_epoch"],
        last_settled_at=row["last_settled_at"],
        min_settle_interval=row["min_settle_interval"],
    )


def find_pool_for_belief(conn: sqlite3.Connection, belief_id: str) -> Optional[Pool]:
    row = conn.execute("SELECT pool_id FROM pools WHERE belief_id = ?", (belief_id,)).fetchone()
    return load_pool(conn, row["pool_id"]) if row else None


def save_pool(conn: sqlite3.Connection, pool: Pool) -> None:
    conn.execute(
        """
        UPDATE pools SET
            r_long = ?, r_short = ?, supply_long = ?, supply_short = ?,
            k_long_x96 = ?, k_short_x96 = ?, sqrt_price_long_x96 = ?, sqrt_price_short_x96 = ?,
            last_settlement_epoch = ?, last_settled_at = ?, min_settle_interval = ?
        WHERE pool_id = ?
        """,
        (
            pool.r_long,
            pool.r_short,
            pool.supply_long,
            pool.supply_short,
            str(pool.k_long_x96),
            str(pool.k_short_x96),
            str(pool.sqrt_price_long_x96),
            str(pool.sqrt_price_short_x96),
            pool.last_settlement_epoch,
            pool.last_settled_at,
            pool.min_settle_interval,
            pool.pool_id,
        ),
    )
