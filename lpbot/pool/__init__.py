"""
Whirlpool domain: account layouts, liquidity math, price range quoting and
the position lifecycle.
"""

from lpbot.pool.lifecycle import (
    ClosedPosition,
    LifecycleConfig,
    OpenedPosition,
    PositionLifecycleManager,
    PositionPhase,
)
from lpbot.pool.quote import Boundary, get_boundaries
from lpbot.pool.whirlpool import PoolState, PositionData

__all__ = [
    "Boundary",
    "ClosedPosition",
    "LifecycleConfig",
    "OpenedPosition",
    "PoolState",
    "PositionData",
    "PositionLifecycleManager",
    "PositionPhase",
    "get_boundaries",
]
