"""
Fast JSON utilities backed by orjson.

Used for the persisted state file and HTTP payloads where the stdlib
encoder would otherwise sit on the hot path.

Usage:
    from lpbot.core.json_utils import dumps, loads

    path.write_bytes(dumps_bytes({"position": None}, indent=True))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def dumps_bytes(obj: Any, indent: bool = False) -> bytes:
    """Fast JSON encode to bytes (skips the utf-8 decode)."""
    option = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(obj, option=option)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
