"""
Ledger reconciler — the outbox/inbox between the mirror and the external ledger.

Outbound: pending_settlements rows written by the epoch scheduler are pushed
to the ledger (skipped in DRY_RUN). Inbound: confirmed ledger events are
applied to the mirror exactly once, keyed by tx_signature in
processed_events. A settlement only reaches the AMM reserves here, when the
ledger reports it confirmed.

An event the mirror refuses is already final on the ledger, so it is kept in
failed_events and retried at the start of every sync until it applies. The
cursor still moves on so one bad event cannot stall the feed.
"""

import hashlib
import json
import logging
import sqlite3
import time
from typing import Optional

from pydantic import ValidationError as SchemaValidationError

from amm.dual_reserve import DualReserveAMM
from config import DRY_RUN
from external.ledger_client import LedgerClient
from ledger.collateral import CollateralLedger
from ledger.trade_recorder import TradeRecorder
from models.errors import ExternalLedgerError, ProtocolError, ValidationError
from models.schemas import DepositEvent, SettlementEvent, TradeEvent, WithdrawEvent, parse_ledger_event
from models.types import SettlementStatus
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

CURSOR_KEY = "ledger_event_cursor"
MAX_DISPATCH_ATTEMPTS = 5
MAX_EVENT_RETRIES = 20


def _already_processed(conn: sqlite3.Connection, tx_signature: str) -> bool:
    row = conn.execute("SELECT 1 FROM processed_events WHERE tx_signature = ?", (tx_signature,)).fetchone()
    return row is not None


def _mark_processed(conn: sqlite3.Connection, event) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO processed_events (tx_signature, event_type, processed_at, payload_json) VALUES (?, ?, ?, ?)",
        (event.tx_signature, event.event_type, time.time(), json.dumps(event.model_dump(mode="json"))),
    )


def _event_key(raw) -> str:
    signature = raw.get("tx_signature") if isinstance(raw, dict) else None
    if isinstance(signature, str) and signature:
        return signature
    digest = hashlib.sha256(json.dumps(raw, sort_keys=True, default=str).encode()).hexdigest()
    return f"unsigned:{digest[:32]}"


def _resolve_failure(conn: sqlite3.Connection, tx_signature: str) -> None:
    conn.execute(
        "UPDATE failed_events SET resolved_at = ? WHERE tx_signature = ? AND resolved_at IS NULL",
        (time.time(), tx_signature),
    )


def read_cursor(conn: sqlite3.Connection) -> Optional[str]:
    row = conn.execute("SELECT value FROM protocol_config WHERE key = ?", (CURSOR_KEY,)).fetchone()
    return row["value"] if row else None


def write_cursor(conn: sqlite3.Connection, cursor: str) -> None:
    conn.execute(
        """
        INSERT INTO protocol_config (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (CURSOR_KEY, cursor, time.time()),
    )


class LedgerReconciler:
    def __init__(
        self,
        store: LedgerStore,
        amm: DualReserveAMM,
        ledger: CollateralLedger,
        recorder: TradeRecorder,
        dry_run: bool = DRY_RUN,
    ) -> None:
        self._store = store
        self._amm = amm
        self._ledger = ledger
        self._recorder = recorder
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def pending_settlements(self, limit: int = 50) -> list[dict]:
        with self._store.snapshot() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM pending_settlements
                WHERE status IN (?, ?) AND attempts < ?
                ORDER BY created_at
                LIMIT ?
                """,
                (SettlementStatus.PENDING.value, SettlementStatus.FAILED.value, MAX_DISPATCH_ATTEMPTS, limit),
            )
            return [dict(r) for r in cursor.fetchall()]

    async def dispatch_pending(self, client: LedgerClient, limit: int = 50) -> int:
        """Push queued settlement instructions. Returns how many were submitted."""
        pending = self.pending_settlements(limit)
        if not pending:
            return 0
        if self.dry_run:
            for row in pending:
                logger.info(
                    "DRY RUN: would submit settlement pool=%s epoch=%d x=%d",
                    row["pool_id"], row["epoch"], row["bd_score_ppm"],
                )
            return 0

        submitted = 0
        for row in pending:
            try:
                signature = await client.submit_settlement(row["pool_id"], row["bd_score_ppm"], row["epoch"])
            except ExternalLedgerError as e:
                attempts = row["attempts"] + 1
                if attempts >= MAX_DISPATCH_ATTEMPTS:
                    logger.error(
                        "Settlement instruction belief=%s epoch=%d abandoned after %d attempts: %s",
                        row["belief_id"], row["epoch"], attempts, e,
                    )
                else:
                    logger.warning(
                        "Settlement instruction belief=%s epoch=%d failed (attempt %d): %s",
                        row["belief_id"], row["epoch"], attempts, e,
                    )
                with self._store.transaction() as conn:
                    conn.execute(
                        """
                        UPDATE pending_settlements
                        SET status = ?, attempts = attempts + 1, last_error = ?, updated_at = ?
                        WHERE belief_id = ? AND epoch = ?
                        """,
                        (SettlementStatus.FAILED.value, str(e), time.time(), row["belief_id"], row["epoch"]),
                    )
                continue
            with self._store.transaction() as conn:
                conn.execute(
                    """
                    UPDATE pending_settlements
                    SET status = ?, tx_signature = ?, attempts = attempts + 1, last_error = NULL, updated_at = ?
                    WHERE belief_id = ? AND epoch = ?
                    """,
                    (SettlementStatus.SUBMITTED.value, signature, time.time(), row["belief_id"], row["epoch"]),
                )
            submitted += 1
        return submitted

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def apply_event(self, raw: dict) -> bool:
        """
        Apply one confirmed ledger event. Returns False if it was already applied.

        Raises:
            ValidationError: unknown event shape
            ProtocolError: the mirror refused the event (e.g. collateral)
        """
        try:
            event = parse_ledger_event(raw)
        except SchemaValidationError as e:
            raise ValidationError(f"malformed ledger event: {e.error_count()} error(s)") from e

        if isinstance(event, TradeEvent):
            return self._apply_trade(event)

        with self._store.transaction() as conn:
            if _already_processed(conn, event.tx_signature):
                _resolve_failure(conn, event.tx_signature)
                logger.debug("Event %s already applied", event.tx_signature)
                return False
            if isinstance(event, SettlementEvent):
                self._amm.apply_settlement(conn, event.pool_id, event.bd_score_ppm, event.epoch)
                conn.execute(
                    """
                    UPDATE pending_settlements
                    SET status = ?, tx_signature = ?, updated_at = ?
                    WHERE pool_id = ? AND epoch = ?
                    """,
                    (SettlementStatus.CONFIRMED.value, event.tx_signature, time.time(), event.pool_id, event.epoch),
                )
            elif isinstance(event, DepositEvent):
                self._ledger.deposit(event.agent_id, event.amount, conn=conn)
            elif isinstance(event, WithdrawEvent):
                self._ledger.withdraw(event.agent_id, event.amount, conn=conn)
            _mark_processed(conn, event)
            _resolve_failure(conn, event.tx_signature)
        logger.info("Applied %s event %s", event.event_type, event.tx_signature)
        return True

    def _apply_trade(self, event: TradeEvent) -> bool:
        # record_trade dedupes on tx_signature itself
        result = self._recorder.record_trade(
            event.agent_id,
            event.pool_id,
            event.side,
            event.token_amount,
            event.notional,
            event.skim_amount,
            trade_type=event.trade_type,
            tx_signature=event.tx_signature,
        )
        with self._store.transaction() as conn:
            _mark_processed(conn, event)
            _resolve_failure(conn, event.tx_signature)
        return not result.duplicate

    # ------------------------------------------------------------------
    # Refused events
    # ------------------------------------------------------------------

    def _apply_or_record(self, raw) -> bool:
        try:
            return self.apply_event(raw)
        except ProtocolError as e:
            self._record_failure(raw, e)
            return False

    def _record_failure(self, raw, error: ProtocolError) -> None:
        key = _event_key(raw)
        event_type = raw.get("event_type") if isinstance(raw, dict) else None
        now = time.time()
        with self._store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO failed_events (tx_signature, event_type, payload_json, reason, error,
                                           attempts, first_failed_at, last_failed_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (tx_signature) DO UPDATE SET
                    attempts = attempts + 1,
                    reason = excluded.reason,
                    error = excluded.error,
                    last_failed_at = excluded.last_failed_at,
                    resolved_at = NULL
                """,
                (key, event_type, json.dumps(raw, default=str), error.reason, str(error), now, now),
            )
            attempts = conn.execute("SELECT attempts FROM failed_events WHERE tx_signature = ?", (key,)).fetchone()[0]
        if attempts >= MAX_EVENT_RETRIES:
            logger.error("Ledger event %s refused %d times, no longer retried: %s", key, attempts, error.reason)
        else:
            logger.error("Ledger event %s refused by the mirror (attempt %d): %s", key, attempts, error.reason)

    def unresolved_failures(self) -> list[dict]:
        """Refused events still awaiting a successful apply, oldest first."""
        with self._store.snapshot() as conn:
            cursor = conn.execute(
                "SELECT * FROM failed_events WHERE resolved_at IS NULL ORDER BY first_failed_at, tx_signature"
            )
            return [dict(r) for r in cursor.fetchall()]

    def retry_failed(self) -> int:
        """Re-apply refused events that still have retries left. Returns how many now applied."""
        recovered = 0
        for row in self.unresolved_failures():
            if row["attempts"] >= MAX_EVENT_RETRIES:
                continue
            if self._apply_or_record(json.loads(row["payload_json"])):
                logger.info("Ledger event %s applied on retry %d", row["tx_signature"], row["attempts"])
                recovered += 1
        return recovered

    async def sync(self, client: LedgerClient, max_pages: int = 10) -> int:
        """Pull and apply events after the stored cursor. Returns how many were newly applied."""
        with self._store.snapshot() as conn:
            cursor = read_cursor(conn)

        applied = self.retry_failed()
        for _ in range(max_pages):
            events, next_cursor = await client.fetch_events(cursor)
            for raw in events:
                if self._apply_or_record(raw):
                    applied += 1
            if not next_cursor or next_cursor == cursor:
                break
            with self._store.transaction() as conn:
                write_cursor(conn, next_cursor)
            cursor = next_cursor
            if not events:
                break
        if applied:
            logger.info("Reconciled %d ledger event(s), cursor=%s", applied, cursor)
        return applied
