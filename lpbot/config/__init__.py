"""
Configuration package.
"""

from lpbot.config.config import DEADBAND_RATIO, Settings, env_bool

__all__ = [
    "DEADBAND_RATIO",
    "Settings",
    "env_bool",
]
