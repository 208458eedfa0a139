"""
Integer fixed-point helpers for the dual-reserve AMM.

Every value that feeds price state is a Python int. Floats appear only in
the ``*_float`` presentation helpers at the bottom of this module.

- Q96: 96 fractional bits (sqrtPriceX96 and curve coefficients)
- Amounts: micro-units, TOKEN_UNIT = 10**6 per whole token
- All intermediates are checked against the 256-bit bound so the off-chain
  mirror cannot produce a value the external ledger would reject.
"""

from config import MAX_U256, PPM, TOKEN_DECIMALS
from models.errors import NumericalOverflow, ValidationError

Q96 = 1 << 96
TOKEN_UNIT = 10 ** TOKEN_DECIMALS
_UNIT_CUBED = TOKEN_UNIT ** 3


def check_u256(value: int, label: str = "value") -> int:
    """Raise NumericalOverflow unless 0 <= value < 2**256."""
    if value < 0 or value > MAX_U256:
        raise NumericalOverflow(f"{label} outside u256 range")
    return value


def mul_div(a: int, b: int, d: int) -> int:
    """
    floor(a * b / d) with a 256-bit intermediate.

    Examples:
        >>> mul_div(10, 3, 4)
        7
    """
    if d == 0:
        raise ValidationError("division by zero")
    return check_u256(a * b, "mul_div product") // d


def isqrt(n: int) -> int:
    """Floor integer square root (Newton's method, deterministic)."""
    if n < 0:
        raise ValidationError("isqrt of negative value")
    if n == 0:
        return 0
    x = n
    y = (x + 1) >> 1
    while y < x:
        x = y
        y = (x + n // x) >> 1
    return x


def icbrt(n: int) -> int:
    """
    Floor integer cube root.

    Examples:
        >>> icbrt(27)
        3
        >>> icbrt(26)
        2
    """
    if n < 0:
        raise ValidationError("icbrt of negative value")
    if n < 8:
        return 1 if n else 0
    # Start above the root so Newton descends monotonically
    x = 1 << ((n.bit_length() + 2) // 3)
    while True:
        y = (2 * x + n // (x * x)) // 3
        if y >= x:
            break
        x = y
    while x * x * x > n:
        x -= 1
    while (x + 1) ** 3 <= n:
        x += 1
    return x


# ---------------------------------------------------------------------------
# Cubic curve: price p(s) = k * (s/U)^2, reserve R(s) = k * (s/U)^3 / 3
# k is carried as k_x96 = k * 2^96, R in currency micro-units.
# ---------------------------------------------------------------------------


def curve_k_x96(k: int) -> int:
    """Encode an integer price coefficient as Q96."""
    if k <= 0:
        raise ValidationError("curve coefficient must be positive")
    return check_u256(k * Q96, "k_x96")


def reserve_for_supply(supply: int, k_x96: int) -> int:
    """Reserve locked under the curve from 0 to *supply* (floor)."""
    if supply <= 0:
        return 0
    numerator = check_u256(k_x96 * supply ** 3, "reserve numerator")
    return numerator // (3 * _UNIT_CUBED * Q96)


def supply_for_reserve(reserve: int, k_x96: int) -> int:
    """Inverse of reserve_for_supply: largest supply whose exact curve reserve does not exceed *reserve*."""
    if reserve <= 0:
        return 0
    if k_x96 <= 0:
        raise ValidationError("curve coefficient must be positive")
    numerator = check_u256(3 * reserve * _UNIT_CUBED * Q96, "supply numerator")
    supply = icbrt(numerator // k_x96)
    while supply > 0 and reserve_for_supply(supply, k_x96) > reserve:
        supply -= 1
    return supply


def derive_k_x96(reserve: int, supply: int) -> int:
    """
    Coefficient that makes the curve pass through (supply, reserve).

    Floors, so reserve_for_supply(supply, k) <= reserve always holds and the
    vault never owes more than it holds.
    """
    if supply <= 0 or reserve <= 0:
        raise ValidationError("cannot derive curve from empty side")
    numerator = check_u256(3 * reserve * _UNIT_CUBED * Q96, "k numerator")
    return max(1, numerator // supply ** 3)


def price_x96(supply: int, k_x96: int) -> int:
    """Marginal price in currency micro-units per whole token, Q96."""
    return check_u256(k_x96 * supply * supply, "price numerator") // (TOKEN_UNIT * TOKEN_UNIT)


def sqrt_price_x96(supply: int, k_x96: int) -> int:
    """sqrtPriceX96 = sqrt(price) * 2^96, computed as isqrt(price_x96 * 2^96)."""
    return isqrt(check_u256(price_x96(supply, k_x96) * Q96, "sqrt price radicand"))


def price_squared_x192(sqrt_price: int) -> int:
    """price * 2^192 recovered from sqrtPriceX96 without leaving integers."""
    return check_u256(sqrt_price * sqrt_price, "sqrt price square")


def implied_relevance_ppm(sqrt_price_long: int, sqrt_price_short: int) -> int:
    """
    price_long / (price_long + price_short) in parts per million (floor).

    Returns 500_000 when both prices are zero.
    """
    p_long = price_squared_x192(sqrt_price_long)
    p_short = price_squared_x192(sqrt_price_short)
    total = p_long + p_short
    if total == 0:
        return PPM // 2
    return p_long * PPM // total


# ---------------------------------------------------------------------------
# Presentation helpers (float)
# ---------------------------------------------------------------------------


def price_from_sqrt_float(sqrt_price: int) -> float:
    """(sqrtPriceX96 / 2^96)^2 in currency per whole token."""
    return price_squared_x192(sqrt_price) / (Q96 * Q96) / TOKEN_UNIT


def implied_relevance_float(sqrt_price_long: int, sqrt_price_short: int) -> float:
    p_long = price_squared_x192(sqrt_price_long)
    p_short = price_squared_x192(sqrt_price_short)
    if p_long + p_short == 0:
        return 0.5
    return p_long / (p_long + p_short)
