"""
Dual-reserve AMM — two independent cubic bonding curves per pool.

Each side (LONG, SHORT) has its own reserve R, supply s and coefficient k:

    price(s)   = k * s^2
    reserve(s) = k * s^3 / 3

Prices are stored as sqrtPriceX96. Implied relevance is
price_long / (price_long + price_short).

Writers of pool state:
  - Trades (buy / sell), mirrored from TradeRecorder
  - Settlement, applied only once the external ledger confirms it

All state math is integer. The pure ``compute_*`` functions return a new
Pool and never touch storage; the ``apply_*`` methods persist through an
open connection supplied by the caller's transaction.
"""

import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import Optional

from amm.fixed_point import (
    curve_k_x96,
    derive_k_x96,
    implied_relevance_float,
    implied_relevance_ppm,
    mul_div,
    price_from_sqrt_float,
    reserve_for_supply,
    sqrt_price_x96,
    supply_for_reserve,
)
from config import (
    DEFAULT_CURVE_K,
    MAX_RESERVE_RATIO_PPM,
    MAX_SETTLE_FACTOR_PPM,
    MIN_RESERVE_RATIO_PPM,
    MIN_SETTLE_FACTOR_PPM,
    PPM,
)
from models.errors import ValidationError
from models.reasons import REASON_EMPTY_SUPPLY, REASON_OVERSELL, REASON_ZERO_AMOUNT
from models.types import Pool, Side
from storage import rows
from storage.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class SettlementFactors:
    """Intermediate values of one settlement, kept for the audit log."""

    bd_score_ppm: int
    reserve_ratio_ppm: int
    f_long_ppm: int
    f_short_ppm: int
    r_long_before: int
    r_short_before: int
    r_long_after: int
    r_short_after: int


def _side_fields(side: Side) -> tuple[str, str, str]:
    if side == Side.LONG:
        return "r_long", "supply_long", "k_long_x96"
    return "r_short", "supply_short", "k_short_x96"


def refresh_prices(pool: Pool) -> Pool:
    """Recompute both sqrt prices from stored supply and coefficients."""
    return replace(
        pool,
        sqrt_price_long_x96=sqrt_price_x96(pool.supply_long, pool.k_long_x96),
        sqrt_price_short_x96=sqrt_price_x96(pool.supply_short, pool.k_short_x96),
    )


def quote_buy(pool: Pool, side: Side, notional: int) -> int:
    """Tokens minted for *notional* currency on *side*."""
    if notional <= 0:
        raise ValidationError("buy notional must be positive", REASON_ZERO_AMOUNT)
    r_field, s_field, k_field = _side_fields(side)
    reserve, supply, k_x96 = getattr(pool, r_field), getattr(pool, s_field), getattr(pool, k_field)
    return supply_for_reserve(reserve + notional, k_x96) - supply


def quote_sell(pool: Pool, side: Side, token_amount: int) -> int:
    """Currency paid out for burning *token_amount* tokens from *side*."""
    if token_amount <= 0:
        raise ValidationError("sell amount must be positive", REASON_ZERO_AMOUNT)
    r_field, s_field, k_field = _side_fields(side)
    reserve, supply, k_x96 = getattr(pool, r_field), getattr(pool, s_field), getattr(pool, k_field)
    if token_amount > supply:
        raise ValidationError(f"sell of {token_amount} exceeds supply {supply}", REASON_OVERSELL)
    remaining = reserve_for_supply(supply - token_amount, k_x96)
    return max(0, reserve - remaining)


def compute_buy(pool: Pool, side: Side, notional: int, token_amount: Optional[int] = None) -> tuple[Pool, int]:
    """
    Apply a buy to a copy of *pool*.

    When the confirmed token amount is known it is taken as-is and the
    curve coefficient re-derived so the curve passes through the new
    (supply, reserve) point. Otherwise the curve quote is used.
    """
    if token_amount is None:
        token_amount = quote_buy(pool, side, notional)
    if notional <= 0 or token_amount <= 0:
        raise ValidationError("buy must move both reserve and supply", REASON_ZERO_AMOUNT)

    r_field, s_field, k_field = _side_fields(side)
    reserve = getattr(pool, r_field) + notional
    supply = getattr(pool, s_field) + token_amount
    updated = replace(pool, **{r_field: reserve, s_field: supply, k_field: derive_k_x96(reserve, supply)})
    return refresh_prices(updated), token_amount


def compute_sell(pool: Pool, side: Side, token_amount: int, notional: Optional[int] = None) -> tuple[Pool, int]:
    """Apply a sell to a copy of *pool*. Returns (pool, payout)."""
    if notional is None:
        notional = quote_sell(pool, side, token_amount)
    r_field, s_field, k_field = _side_fields(side)
    reserve, supply, k_x96 = getattr(pool, r_field), getattr(pool, s_field), getattr(pool, k_field)
    if token_amount <= 0:
        raise ValidationError("sell amount must be positive", REASON_ZERO_AMOUNT)
    if token_amount > supply:
        raise ValidationError(f"sell of {token_amount} exceeds supply {supply}", REASON_OVERSELL)
    if notional > reserve:
        raise ValidationError(f"payout {notional} exceeds reserve {reserve}", REASON_OVERSELL)

    reserve -= notional
    supply -= token_amount
    if supply > 0 and reserve > 0:
        k_x96 = derive_k_x96(reserve, supply)
    updated = replace(pool, **{r_field: reserve, s_field: supply, k_field: k_x96})
    return refresh_prices(updated), notional


def compute_settlement(pool: Pool, bd_score_ppm: int) -> tuple[Pool, SettlementFactors]:
    """
    Rescale reserves toward the consensus score.

    q = r_long / (r_long + r_short), clamped to [0.1%, 99.9%]
    f_L = x / q, f_S = (1 - x) / (1 - q), each clamped to [0.01, 100]

    Scaled reserves are then recoupled so they still sum to the vault
    balance, and each side's coefficient is re-derived from its new reserve
    and unchanged supply.
    """
    if not 0 <= bd_score_ppm <= PPM:
        raise ValidationError(f"bd_score_ppm {bd_score_ppm} outside [0, {PPM}]")

    total = pool.r_long + pool.r_short
    q = pool.r_long * PPM // total if total > 0 else PPM // 2
    q = min(max(q, MIN_RESERVE_RATIO_PPM), MAX_RESERVE_RATIO_PPM)

    f_long = min(max(bd_score_ppm * PPM // q, MIN_SETTLE_FACTOR_PPM), MAX_SETTLE_FACTOR_PPM)
    f_short = min(max((PPM - bd_score_ppm) * PPM // (PPM - q), MIN_SETTLE_FACTOR_PPM), MAX_SETTLE_FACTOR_PPM)

    r_long = mul_div(pool.r_long, f_long, PPM)
    r_short = mul_div(pool.r_short, f_short, PPM)

    scaled_total = r_long + r_short
    if scaled_total > 0 and scaled_total != total:
        r_long = mul_div(r_long, total, scaled_total)
        r_short = total - r_long

    k_long = derive_k_x96(r_long, pool.supply_long) if r_long > 0 and pool.supply_long > 0 else pool.k_long_x96
    k_short = derive_k_x96(r_short, pool.supply_short) if r_short > 0 and pool.supply_short > 0 else pool.k_short_x96

    updated = refresh_prices(
        replace(pool, r_long=r_long, r_short=r_short, k_long_x96=k_long, k_short_x96=k_short)
    )
    factors = SettlementFactors(
        bd_score_ppm=bd_score_ppm,
        reserve_ratio_ppm=q,
        f_long_ppm=f_long,
        f_short_ppm=f_short,
        r_long_before=pool.r_long,
        r_short_before=pool.r_short,
        r_long_after=r_long,
        r_short_after=r_short,
    )
    return updated, factors


def pool_snapshot(pool: Pool) -> dict:
    """Display-unit view of a pool. Floats only, never fed back into state."""
    return {
        "pool_id": pool.pool_id,
        "belief_id": pool.belief_id,
        "r_long": pool.r_long,
        "r_short": pool.r_short,
        "supply_long": pool.supply_long,
        "supply_short": pool.supply_short,
        "price_long": price_from_sqrt_float(pool.sqrt_price_long_x96),
        "price_short": price_from_sqrt_float(pool.sqrt_price_short_x96),
        "implied_relevance": implied_relevance_float(pool.sqrt_price_long_x96, pool.sqrt_price_short_x96),
        "implied_relevance_ppm": implied_relevance_ppm(pool.sqrt_price_long_x96, pool.sqrt_price_short_x96),
        "vault_balance": pool.vault_balance,
        "reserve_ratio": pool.r_long / pool.vault_balance if pool.vault_balance else 0.5,
        "last_settlement_epoch": pool.last_settlement_epoch,
    }


class DualReserveAMM:
    """Storage-facing wrapper around the pure curve functions."""

    def __init__(self, store: LedgerStore, default_k: int = DEFAULT_CURVE_K) -> None:
        self._store = store
        self._default_k_x96 = curve_k_x96(default_k)

    def deploy_pool(
        self,
        pool_id: str,
        belief_id: str,
        min_settle_interval: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Pool:
        """Create an empty pool for *belief_id* and link the belief to it."""
        pool = Pool(
            pool_id=pool_id,
            belief_id=belief_id,
            k_long_x96=self._default_k_x96,
            k_short_x96=self._default_k_x96,
            min_settle_interval=min_settle_interval,
        )
        if conn is None:
            with self._store.transaction() as tx:
                return self.deploy_pool(pool_id, belief_id, min_settle_interval, conn=tx)

        belief = rows.load_belief(conn, belief_id)
        rows.insert_pool(conn, pool)
        belief.pool_id = pool_id
        rows.save_belief(conn, belief)
        logger.info("Pool %s deployed for belief %s", pool_id, belief_id)
        return pool

    def get_pool(self, pool_id: str) -> Pool:
        with self._store.snapshot() as conn:
            return rows.load_pool(conn, pool_id)

    def apply_settlement(self, conn: sqlite3.Connection, pool_id: str, bd_score_ppm: int, epoch: int) -> SettlementFactors:
        """Persist a confirmed settlement. Caller owns the transaction and dedupe."""
        pool = rows.load_pool(conn, pool_id)
        if pool.supply_long == 0 and pool.supply_short == 0:
            logger.warning("Settlement on pool %s with no supply (%s)", pool_id, REASON_EMPTY_SUPPLY)
        updated, factors = compute_settlement(pool, bd_score_ppm)
        updated = replace(updated, last_settlement_epoch=max(pool.last_settlement_epoch, epoch))
        rows.save_pool(conn, updated)
        logger.info(
            "Pool %s settled epoch=%d x=%d q=%d f_L=%d f_S=%d reserves %d/%d -> %d/%d",
            pool_id,
            epoch,
            bd_score_ppm,
            factors.reserve_ratio_ppm,
            factors.f_long_ppm,
            factors.f_short_ppm,
            factors.r_long_before,
            factors.r_short_before,
            factors.r_long_after,
            factors.r_short_after,
        )
        return factors

    def snapshot(self, pool_id: str) -> dict:
        return pool_snapshot(self.get_pool(pool_id))
