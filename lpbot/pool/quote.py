"""
Quote engine: current price and the position range around it.
"""

from __future__ import annotations

from dataclasses import dataclass

from lpbot.pool.whirlpool import PoolState


@dataclass(frozen=True)
class Boundary:
    """Price range for a new position. Recomputed every poll, never persisted."""
    price: float
    lower_boundary: float
    upper_boundary: float

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "lower_boundary": self.lower_boundary,
            "upper_boundary": self.upper_boundary,
        }


def get_boundaries(pool: PoolState, lower_pct: float, upper_pct: float) -> Boundary:
    """
    Range of `pool`'s current price widened by `lower_pct` below and
    `upper_pct` above (fractions, e.g. 0.05 for 5%).

    Guarantees lower_boundary <= price <= upper_boundary.
    """
    if not 0 <= lower_pct < 1:
        raise ValueError(f"lower_pct must be in [0, 1), got {lower_pct}")
    if upper_pct < 0:
        raise ValueError(f"upper_pct must be >= 0, got {upper_pct}")
    price = pool.price
    if price <= 0:
        raise ValueError(f"pool {pool.address} has non-positive price {price}")
    return Boundary(
        price=price,
        lower_boundary=price * (1 - lower_pct),
        upper_boundary=price * (1 + upper_pct),
    )
