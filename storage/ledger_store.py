"""
Belief Market — SQLite Ledger Store

Durable mirror of agents, beliefs, submissions, positions and pools, plus
the audit trail written by epoch settlement.

Tables:
  - agents: total_stake per agent
  - beliefs: epoch state machine and last aggregate per belief
  - belief_submissions: (agent, belief, epoch) belief + meta prediction log
  - positions: (agent, pool, side) balance, lock and cost basis
  - pools: dual-reserve AMM mirror (fixed-point fields stored as TEXT)
  - trades: recorded trades, unique by tx_signature
  - protocol_config: live tunables, the rollover pot scalar and the event cursor
  - belief_relevance_history: one row per settled epoch (cached result)
  - stake_redistribution_events: per-agent stake deltas per settled epoch
  - pending_settlements: outbox of settlement instructions
  - processed_events: external ledger events already applied
  - failed_events: confirmed ledger events the mirror refused, retried each sync

The schema is versioned with PRAGMA user_version. A database written by a
newer build is refused rather than opened.

Usage:
    store = LedgerStore(db_path)
    store.init_db()  # Call once at startup
    store.backup()   # Optional startup snapshot
    with store.transaction() as conn:
        ...
"""

import logging
import sqlite3
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Iterator, Optional

from config import PROTOCOL_DB_FILE

log = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1

BUSY_TIMEOUT_MS = 5000
BACKUP_SLOTS = 3


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def _create_all_tables_fresh(conn: sqlite3.Connection) -> None:
    """Create every table of the current schema."""

    conn.execute("""
        CREATE TABLE IF NOT EXISTS agents (
            agent_id TEXT PRIMARY KEY,
            total_stake INTEGER NOT NULL DEFAULT 0 CHECK (total_stake >= 0),
            created_at REAL NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS beliefs (
            belief_id TEXT PRIMARY KEY,
            creator TEXT NOT NULL,
            pool_id TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            epoch_state TEXT NOT NULL DEFAULT 'accepting_submissions',
            current_epoch INTEGER NOT NULL DEFAULT 0,
            expiration_epoch INTEGER NOT NULL,
            previous_aggregate REAL NOT NULL DEFAULT 0.5,
            previous_disagreement_entropy REAL NOT NULL DEFAULT 0.0,
            certainty REAL NOT NULL DEFAULT 0.0,
            disagreement_entropy REAL NOT NULL DEFAULT 0.0,
            last_processed_epoch INTEGER,
            settling_deadline REAL,
            created_at REAL NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS belief_submissions (
            submission_id TEXT PRIMARY KEY,
            agent_id TEXT NOT NULL REFERENCES agents(agent_id),
            belief_id TEXT NOT NULL REFERENCES beliefs(belief_id),
            epoch INTEGER NOT NULL,
            belief REAL NOT NULL,
            meta_prediction REAL NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            UNIQUE (agent_id, belief_id, epoch)
        )
    """)

    # Fixed-point values can exceed 64 bits, stored as decimal TEXT
    conn.execute("""
        CREATE TABLE IF NOT EXISTS pools (
            pool_id TEXT PRIMARY KEY,
            belief_id TEXT NOT NULL UNIQUE REFERENCES beliefs(belief_id),
            r_long INTEGER NOT NULL DEFAULT 0,
            r_short INTEGER NOT NULL DEFAULT 0,
            supply_long INTEGER NOT NULL DEFAULT 0,
            supply_short INTEGER NOT NULL DEFAULT 0,
            k_long_x96 TEXT NOT NULL,
            k_short_x96 TEXT NOT NULL,
            sqrt_price_long_x96 TEXT NOT NULL DEFAULT '0',
            sqrt_price_short_x96 TEXT NOT NULL DEFAULT '0',
            last_settlement_epoch INTEGER NOT NULL DEFAULT 0,
            last_settled_at REAL,
            min_settle_interval INTEGER,
            created_at REAL NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS positions (
            agent_id TEXT NOT NULL REFERENCES agents(agent_id),
            pool_id TEXT NOT NULL REFERENCES pools(pool_id),
            side TEXT NOT NULL CHECK (side IN ('LONG', 'SHORT')),
            token_balance INTEGER NOT NULL DEFAULT 0 CHECK (token_balance >= 0),
            belief_lock INTEGER NOT NULL DEFAULT 0 CHECK (belief_lock >= 0),
            cost_basis INTEGER NOT NULL DEFAULT 0,
            last_buy_amount INTEGER NOT NULL DEFAULT 0,
            updated_at REAL NOT NULL,
            PRIMARY KEY (agent_id, pool_id, side)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS trades (
            trade_id TEXT PRIMARY KEY,
            tx_signature TEXT UNIQUE,
            agent_id TEXT NOT NULL,
            pool_id TEXT NOT NULL,
            side TEXT NOT NULL,
            trade_type TEXT NOT NULL,
            token_amount INTEGER NOT NULL,
            notional INTEGER NOT NULL,
            skim_amount INTEGER NOT NULL DEFAULT 0,
            lock_before INTEGER NOT NULL,
            lock_after INTEGER NOT NULL,
            balance_after INTEGER NOT NULL,
            submission_id TEXT,
            recorded_at REAL NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS protocol_config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at REAL NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS belief_relevance_history (
            belief_id TEXT NOT NULL REFERENCES beliefs(belief_id),
            epoch INTEGER NOT NULL,
            aggregate REAL NOT NULL,
            certainty REAL NOT NULL,
            disagreement_entropy REAL NOT NULL,
            bd_score_ppm INTEGER NOT NULL,
            learning_occurred INTEGER NOT NULL,
            redistribution_occurred INTEGER NOT NULL,
            result_json TEXT NOT NULL,
            recorded_at REAL NOT NULL,
            PRIMARY KEY (belief_id, epoch)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS stake_redistribution_events (
            event_id INTEGER PRIMARY KEY AUTOINCREMENT,
            belief_id TEXT NOT NULL,
            epoch INTEGER NOT NULL,
            agent_id TEXT NOT NULL,
            information_score REAL NOT NULL,
            stake_before INTEGER NOT NULL,
            stake_after INTEGER NOT NULL,
            stake_delta INTEGER NOT NULL,
            recorded_at REAL NOT NULL,
            UNIQUE (belief_id, epoch, agent_id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS pending_settlements (
            belief_id TEXT NOT NULL,
            epoch INTEGER NOT NULL,
            pool_id TEXT NOT NULL,
            bd_score_ppm INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            tx_signature TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            PRIMARY KEY (belief_id, epoch)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS processed_events (
            tx_signature TEXT PRIMARY KEY,
            event_type TEXT NOT NULL,
            processed_at REAL NOT NULL,
            payload_json TEXT
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS failed_events (
            tx_signature TEXT PRIMARY KEY,
            event_type TEXT,
            payload_json TEXT NOT NULL,
            reason TEXT NOT NULL,
            error TEXT,
            attempts INTEGER NOT NULL DEFAULT 1,
            first_failed_at REAL NOT NULL,
            last_failed_at REAL NOT NULL,
            resolved_at REAL
        )
    """)

    conn.execute("CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_settlements(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_failed_unresolved ON failed_events(resolved_at, first_failed_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_submissions_belief ON belief_submissions(belief_id, epoch)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_agent ON positions(agent_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_pool ON trades(pool_id, recorded_at)")

    conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
    conn.commit()
    log.info("Fresh DB created at schema v%d.", CURRENT_SCHEMA_VERSION)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")


# ---------------------------------------------------------------------------
# Backup / restore
# ---------------------------------------------------------------------------


def backup_slots(db_path: Path) -> list[Path]:
    """bak1 (newest) .. bakN (oldest) paths for *db_path*."""
    db = Path(db_path)
    return [db.with_name(f"{db.name}.bak{n}") for n in range(1, BACKUP_SLOTS + 1)]


def _copy_database(source: Path, target: Path) -> None:
    # The online backup API reads through the WAL, so committed pages that
    # were never checkpointed are included.
    with closing(sqlite3.connect(source)) as src, closing(sqlite3.connect(target)) as dst:
        src.backup(dst)


def backup_db(db_path: Path) -> Optional[Path]:
    """
    Snapshot *db_path* into bak1, shifting older snapshots down one slot.

    Returns the new snapshot path, or None when there is no database yet.
    """
    db = Path(db_path)
    if not db.exists():
        return None

    slots = backup_slots(db)
    for newer, older in reversed(list(zip(slots, slots[1:]))):
        if newer.exists():
            newer.replace(older)

    _copy_database(db, slots[0])
    log.info("Backup written: %s", slots[0].name)
    return slots[0]


def restore_from_backup(db_path: Path) -> bool:
    """
    Replace *db_path* with the newest snapshot that passes integrity_check.

    The snapshot is copied to a scratch file first and moved into place, and
    stale -wal/-shm files are removed so SQLite does not replay them onto the
    restored file. Returns False when no usable snapshot exists.
    """
    db = Path(db_path)
    for bak in backup_slots(db):
        if not bak.exists():
            continue
        try:
            with closing(sqlite3.connect(bak)) as check:
                result = check.execute("PRAGMA integrity_check").fetchone()
            if not result or result[0] != "ok":
                log.warning("Backup %s failed integrity check, skipping.", bak.name)
                continue
            scratch = db.with_name(f"{db.name}.restoring")
            scratch.unlink(missing_ok=True)
            _copy_database(bak, scratch)
        except sqlite3.Error as exc:
            log.warning("Backup %s unusable: %s", bak.name, exc)
            continue
        for suffix in ("-wal", "-shm"):
            db.with_name(db.name + suffix).unlink(missing_ok=True)
        scratch.replace(db)
        log.warning("Database %s restored from %s", db.name, bak.name)
        return True
    return False


# ---------------------------------------------------------------------------
# LedgerStore
# ---------------------------------------------------------------------------


class LedgerStore:
    """
    Connection factory for the ledger database.

    Each unit of work opens its own connection so worker threads never share
    one. ``transaction()`` takes the SQLite write lock up front
    (BEGIN IMMEDIATE), which serializes read-modify-write cycles the way
    ``SELECT ... FOR UPDATE`` would. ``snapshot()`` opens a read transaction
    that sees one consistent WAL snapshot for its whole lifetime.
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path) if db_path else PROTOCOL_DB_FILE

    def init_db(self) -> None:
        """
        Initialize the database.

        * Sets WAL journal mode, foreign keys, and busy timeout.
        * Runs integrity check (restores the newest good backup on failure).
        * For a fresh DB (user_version == 0) creates all tables.
        * Refuses a DB written by a newer schema.
        """
        db = self.db_path
        db.parent.mkdir(parents=True, exist_ok=True)

        conn = self._open_checked(db)
        if conn is None:
            if not restore_from_backup(db):
                raise RuntimeError(f"Database {db} is corrupt and no valid backup found.")
            conn = self._open_checked(db)
            if conn is None:
                raise RuntimeError(f"Database {db} is still corrupt after restore.")

        try:
            user_version = conn.execute("PRAGMA user_version").fetchone()[0]

            if user_version > CURRENT_SCHEMA_VERSION:
                raise RuntimeError(
                    f"DB schema (v{user_version}) is newer than code (v{CURRENT_SCHEMA_VERSION}). Update code first."
                )

            if user_version == 0:
                _create_all_tables_fresh(conn)
        finally:
            conn.close()

    @staticmethod
    def _open_checked(db: Path) -> Optional[sqlite3.Connection]:
        """Open *db* with pragmas applied, or None if it fails integrity_check."""
        conn = sqlite3.connect(db)
        try:
            _apply_pragmas(conn)
            integrity = conn.execute("PRAGMA integrity_check").fetchone()
        except sqlite3.DatabaseError as exc:
            integrity = (str(exc),)
        if integrity and integrity[0] == "ok":
            return conn
        conn.close()
        log.error("DB integrity check failed for %s: %s", db.name, integrity)
        return None

    def backup(self) -> Optional[Path]:
        """Rotate a fresh snapshot of the live database into the backup slots."""
        return backup_db(self.db_path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction: commits on success, rolls back on any exception."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Read-only transaction over one consistent snapshot."""
        conn = self.connect()
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("ROLLBACK")
        finally:
            conn.close()
