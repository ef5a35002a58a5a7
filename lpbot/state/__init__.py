"""
State persistence package.
"""

from lpbot.state.state_store import AtomicStateStore, PersistedState, Position, StateStore

__all__ = [
    "AtomicStateStore",
    "PersistedState",
    "Position",
    "StateStore",
]
