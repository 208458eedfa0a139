"""
Live protocol configuration backed by the protocol_config table.

Tunables are seeded from config.py defaults on first start and can be
changed at runtime. Components receive a frozen ProtocolConfig snapshot and
never read the table ad hoc. The same table carries the durable penalty-pot
rollover scalar.
"""

import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional

from config import (
    BASE_SKIM_RATE,
    DECOMPOSITION_QUALITY_THRESHOLD,
    LEARNING_THRESHOLD,
    MAX_SKIM_RATE,
    MIN_NEW_SUBMISSIONS_FOR_REBASE,
    MIN_SETTLE_INTERVAL_SECONDS,
    NEUTRAL_SKIM_RATE,
    PENALTY_RATE_CAP,
    SETTLE_CLAIM_TIMEOUT_SECONDS,
)
from models.errors import ValidationError
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

ROLLOVER_KEY = "penalty_pot_rollover"


@dataclass(frozen=True)
class ProtocolConfig:
    """Read-only snapshot of the tunables."""

    min_new_submissions_for_rebase: int = MIN_NEW_SUBMISSIONS_FOR_REBASE
    base_skim_rate: float = BASE_SKIM_RATE
    max_skim_rate: float = MAX_SKIM_RATE
    min_settle_interval: int = MIN_SETTLE_INTERVAL_SECONDS
    penalty_rate_cap: float = PENALTY_RATE_CAP
    neutral_skim_rate: float = NEUTRAL_SKIM_RATE
    learning_threshold: float = LEARNING_THRESHOLD
    settle_claim_timeout: int = SETTLE_CLAIM_TIMEOUT_SECONDS
    decomposition_quality_threshold: float = DECOMPOSITION_QUALITY_THRESHOLD

    def __post_init__(self) -> None:
        if self.min_new_submissions_for_rebase < 1:
            raise ValidationError("min_new_submissions_for_rebase must be >= 1")
        if not 0.0 < self.base_skim_rate <= self.max_skim_rate <= 1.0:
            raise ValidationError("require 0 < base_skim_rate <= max_skim_rate <= 1")
        if self.min_settle_interval < 0 or self.settle_claim_timeout <= 0:
            raise ValidationError("intervals must be non-negative")
        if not 0.0 <= self.neutral_skim_rate <= self.penalty_rate_cap <= 1.0:
            raise ValidationError("require 0 <= neutral_skim_rate <= penalty_rate_cap <= 1")
        if self.learning_threshold < 0:
            raise ValidationError("learning_threshold must be non-negative")
        if not 0.0 <= self.decomposition_quality_threshold <= 1.0:
            raise ValidationError("decomposition_quality_threshold must be within [0, 1]")

    @property
    def base_skim_bps(self) -> int:
        return round(self.base_skim_rate * 10_000)

    def to_dict(self) -> dict:
        return asdict(self)


_FIELD_TYPES = {f.name: f.type for f in fields(ProtocolConfig)}


def _coerce(key: str, raw: str) -> Any:
    kind = _FIELD_TYPES[key]
    if kind in (int, "int"):
        return int(raw)
    return float(raw)


class ConfigStore:
    """Reads and writes protocol_config rows."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def seed_defaults(self, overrides: Optional[dict] = None) -> ProtocolConfig:
        """Insert any missing tunables (and the rollover scalar) without touching existing rows."""
        defaults = ProtocolConfig(**(overrides or {}))
        now = time.time()
        with self._store.transaction() as conn:
            for key, value in defaults.to_dict().items():
                conn.execute(
                    "INSERT OR IGNORE INTO protocol_config (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, str(value), now),
                )
            conn.execute(
                "INSERT OR IGNORE INTO protocol_config (key, value, updated_at) VALUES (?, '0', ?)",
                (ROLLOVER_KEY, now),
            )
        return self.snapshot()

    def snapshot(self) -> ProtocolConfig:
        with self._store.snapshot() as conn:
            rows = conn.execute("SELECT key, value FROM protocol_config").fetchall()
        values = {r["key"]: _coerce(r["key"], r["value"]) for r in rows if r["key"] in _FIELD_TYPES}
        return ProtocolConfig(**values)

    def update(self, **changes: Any) -> ProtocolConfig:
        unknown = set(changes) - set(_FIELD_TYPES)
        if unknown:
            raise ValidationError(f"Unknown config keys: {sorted(unknown)}")
        # Validate the merged result before writing anything
        merged = ProtocolConfig(**{**self.snapshot().to_dict(), **changes})
        now = time.time()
        with self._store.transaction() as conn:
            for key in changes:
                conn.execute(
                    """
                    INSERT INTO protocol_config (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, str(getattr(merged, key)), now),
                )
        logger.info("Protocol config updated: %s", changes)
        return merged


def read_rollover(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT value FROM protocol_config WHERE key = ?", (ROLLOVER_KEY,)).fetchone()
    return int(row["value"]) if row else 0


def write_rollover(conn: sqlite3.Connection, value: int) -> None:
    if value < 0:
        raise ValidationError(f"rollover cannot be negative: {value}")
    conn.execute(
        """
        INSERT INTO protocol_config (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (ROLLOVER_KEY, str(value), time.time()),
    )
