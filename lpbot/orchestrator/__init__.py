"""
Orchestrator package: the rebalance control loop.
"""

from lpbot.orchestrator.rebalance_loop import (
    CycleAction,
    CycleResult,
    RebalanceLoop,
    RebalanceLoopConfig,
    is_in_band,
)

__all__ = [
    "CycleAction",
    "CycleResult",
    "RebalanceLoop",
    "RebalanceLoopConfig",
    "is_in_band",
]
