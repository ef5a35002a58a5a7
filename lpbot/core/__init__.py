"""
Core utilities shared across the bot.
"""

from lpbot.core.json_utils import dumps, dumps_bytes, loads

__all__ = ["dumps", "dumps_bytes", "loads"]
