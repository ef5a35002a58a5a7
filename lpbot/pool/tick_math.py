"""
Concentrated-liquidity math for Whirlpools.

Whirlpool prices are sqrt prices in Q64.64 fixed point; token amounts and
liquidity are raw integers. Token A amounts round up and token B amounts
round up when they are what the user must deposit, and round down when they
are what the user receives.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, localcontext

from lpbot.constants import MAX_TICK_INDEX, MIN_TICK_INDEX, TICK_ARRAY_SIZE

Q64 = 2 ** 64
BPS_DENOMINATOR = 10_000
_TICK_BASE = Decimal("1.0001")


# ---------------------------------------------------------------------------
# Prices and ticks
# ---------------------------------------------------------------------------

def sqrt_price_x64_to_price(sqrt_price_x64: int, decimals_a: int, decimals_b: int) -> float:
    """Human price of token A in token B."""
    with localcontext() as ctx:
        ctx.prec = 50
        ratio = (Decimal(sqrt_price_x64) / Decimal(Q64)) ** 2
        return float(ratio * Decimal(10) ** (decimals_a - decimals_b))


def tick_index_to_sqrt_price_x64(tick_index: int) -> int:
    if tick_index < MIN_TICK_INDEX or tick_index > MAX_TICK_INDEX:
        raise ValueError(f"tick {tick_index} out of bounds [{MIN_TICK_INDEX}, {MAX_TICK_INDEX}]")
    with localcontext() as ctx:
        ctx.prec = 50
        return int(_TICK_BASE ** (Decimal(tick_index) / 2) * Q64)


def price_to_tick_index(price: float, decimals_a: int, decimals_b: int) -> int:
    """Largest tick whose price does not exceed `price`."""
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    raw = price * 10 ** (decimals_b - decimals_a)
    tick = math.floor(math.log(raw) / math.log(1.0001))
    return max(MIN_TICK_INDEX, min(MAX_TICK_INDEX, tick))


def tick_index_to_price(tick_index: int, decimals_a: int, decimals_b: int) -> float:
    return 1.0001 ** tick_index * 10 ** (decimals_a - decimals_b)


def initializable_tick_index(tick_index: int, tick_spacing: int) -> int:
    """Nearest tick that is a multiple of the pool's tick spacing."""
    if tick_spacing <= 0:
        raise ValueError("tick spacing must be positive")
    rounded = int(round(tick_index / tick_spacing)) * tick_spacing
    lowest = -(-MIN_TICK_INDEX // tick_spacing) * tick_spacing
    highest = (MAX_TICK_INDEX // tick_spacing) * tick_spacing
    return max(lowest, min(highest, rounded))


def tick_array_start_index(tick_index: int, tick_spacing: int) -> int:
    """Start tick of the tick array containing `tick_index`."""
    ticks_in_array = tick_spacing * TICK_ARRAY_SIZE
    return (tick_index // ticks_in_array) * ticks_in_array


# ---------------------------------------------------------------------------
# Amounts and liquidity
# ---------------------------------------------------------------------------

def _div(num: int, den: int, round_up: bool) -> int:
    if den == 0:
        raise ZeroDivisionError("liquidity math denominator is zero")
    return -(-num // den) if round_up else num // den


def amount_a_for_liquidity(liquidity: int, sqrt_lower: int, sqrt_upper: int, round_up: bool) -> int:
    if sqrt_lower > sqrt_upper:
        sqrt_lower, sqrt_upper = sqrt_upper, sqrt_lower
    numerator = (liquidity * (sqrt_upper - sqrt_lower)) << 64
    return _div(numerator, sqrt_upper * sqrt_lower, round_up)


def amount_b_for_liquidity(liquidity: int, sqrt_lower: int, sqrt_upper: int, round_up: bool) -> int:
    if sqrt_lower > sqrt_upper:
        sqrt_lower, sqrt_upper = sqrt_upper, sqrt_lower
    return _div(liquidity * (sqrt_upper - sqrt_lower), Q64, round_up)


def liquidity_for_amount_a(amount: int, sqrt_lower: int, sqrt_upper: int) -> int:
    if sqrt_lower > sqrt_upper:
        sqrt_lower, sqrt_upper = sqrt_upper, sqrt_lower
    return (amount * sqrt_lower * sqrt_upper) // ((sqrt_upper - sqrt_lower) << 64)


def liquidity_for_amount_b(amount: int, sqrt_lower: int, sqrt_upper: int) -> int:
    if sqrt_lower > sqrt_upper:
        sqrt_lower, sqrt_upper = sqrt_upper, sqrt_lower
    return (amount << 64) // (sqrt_upper - sqrt_lower)


def token_amounts_for_liquidity(
    liquidity: int,
    sqrt_price: int,
    tick_lower: int,
    tick_upper: int,
    round_up: bool,
) -> tuple[int, int]:
    """Token A and B amounts represented by `liquidity` at the current price."""
    sqrt_lower = tick_index_to_sqrt_price_x64(tick_lower)
    sqrt_upper = tick_index_to_sqrt_price_x64(tick_upper)
    if sqrt_price <= sqrt_lower:
        return amount_a_for_liquidity(liquidity, sqrt_lower, sqrt_upper, round_up), 0
    if sqrt_price >= sqrt_upper:
        return 0, amount_b_for_liquidity(liquidity, sqrt_lower, sqrt_upper, round_up)
    return (
        amount_a_for_liquidity(liquidity, sqrt_price, sqrt_upper, round_up),
        amount_b_for_liquidity(liquidity, sqrt_lower, sqrt_price, round_up),
    )


def adjust_for_slippage(amount: int, slippage_bps: int, up: bool) -> int:
    if up:
        return _div(amount * (BPS_DENOMINATOR + slippage_bps), BPS_DENOMINATOR, True)
    return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


@dataclass(frozen=True)
class IncreaseLiquidityQuote:
    liquidity: int
    token_est_a: int
    token_est_b: int
    token_max_a: int
    token_max_b: int


@dataclass(frozen=True)
class DecreaseLiquidityQuote:
    liquidity: int
    token_est_a: int
    token_est_b: int
    token_min_a: int
    token_min_b: int


def increase_liquidity_quote(
    input_is_a: bool,
    input_amount: int,
    sqrt_price: int,
    tick_lower: int,
    tick_upper: int,
    slippage_bps: int,
) -> IncreaseLiquidityQuote:
    """
    Liquidity obtainable from `input_amount` of one token, with the maximum
    amounts of both tokens the deposit may take under `slippage_bps`.

    An input token that the range does not use at the current price yields a
    zero-liquidity quote.
    """
    if tick_lower >= tick_upper:
        raise ValueError(f"tick_lower {tick_lower} must be below tick_upper {tick_upper}")
    sqrt_lower = tick_index_to_sqrt_price_x64(tick_lower)
    sqrt_upper = tick_index_to_sqrt_price_x64(tick_upper)

    if sqrt_price <= sqrt_lower:
        liquidity = liquidity_for_amount_a(input_amount, sqrt_lower, sqrt_upper) if input_is_a else 0
    elif sqrt_price >= sqrt_upper:
        liquidity = 0 if input_is_a else liquidity_for_amount_b(input_amount, sqrt_lower, sqrt_upper)
    elif input_is_a:
        liquidity = liquidity_for_amount_a(input_amount, sqrt_price, sqrt_upper)
    else:
        liquidity = liquidity_for_amount_b(input_amount, sqrt_lower, sqrt_price)

    est_a, est_b = token_amounts_for_liquidity(liquidity, sqrt_price, tick_lower, tick_upper, True)
    return IncreaseLiquidityQuote(
        liquidity=liquidity,
        token_est_a=est_a,
        token_est_b=est_b,
        token_max_a=adjust_for_slippage(est_a, slippage_bps, up=True),
        token_max_b=adjust_for_slippage(est_b, slippage_bps, up=True),
    )


def decrease_liquidity_quote(
    liquidity: int,
    sqrt_price: int,
    tick_lower: int,
    tick_upper: int,
    slippage_bps: int,
) -> DecreaseLiquidityQuote:
    """Minimum token amounts accepted when withdrawing `liquidity`."""
    est_a, est_b = token_amounts_for_liquidity(liquidity, sqrt_price, tick_lower, tick_upper, False)
    return DecreaseLiquidityQuote(
        liquidity=liquidity,
        token_est_a=est_a,
        token_est_b=est_b,
        token_min_a=adjust_for_slippage(est_a, slippage_bps, up=False),
        token_min_b=adjust_for_slippage(est_b, slippage_bps, up=False),
    )
