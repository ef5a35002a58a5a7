"""
Persisted position state.

The file holds a single record:

    {"position": {"address": "<base58>", "openPrice": 101.25}}   or
    {"position": null}

StateStore does the blocking file IO (write to a temp file, then atomic
replace). AtomicStateStore runs it in the default executor behind an
`asyncio.Lock` so the event loop never blocks and writes never interleave.

Unlike a cache, this file is the only record of which on-chain position the
bot owns, so read and write errors propagate instead of being ignored.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from lpbot.core.json_utils import dumps_bytes, loads
from lpbot.errors import InvariantViolation

log = logging.getLogger("lpbot")


@dataclass(frozen=True)
class Position:
    address: str
    open_price: float
    tick_lower_index: Optional[int] = None
    tick_upper_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "openPrice": self.open_price}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(address=str(data["address"]), open_price=float(data["openPrice"]))


@dataclass(frozen=True)
class PersistedState:
    position: Optional[Position] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"position": self.position.to_dict() if self.position else None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedState":
        raw = data.get("position")
        return cls(position=Position.from_dict(raw) if raw else None)


class StateStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> PersistedState:
        if not self.path.exists():
            return PersistedState()
        try:
            data = loads(self.path.read_bytes())
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return PersistedState.from_dict(data)
        except (ValueError, KeyError, TypeError) as exc:
            log.error(json.dumps({"event": "state_load_error", "path": str(self.path), "error": repr(exc)}))
            raise InvariantViolation(f"state file {self.path} is unreadable: {exc}") from exc

    def write(self, state: PersistedState) -> None:
        self.tmp.write_bytes(dumps_bytes(state.to_dict(), indent=True))
        self.tmp.replace(self.path)


class AtomicStateStore:
    def __init__(self, path: str | Path) -> None:
        self._store = StateStore(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def read(self) -> PersistedState:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.read)

    async def write(self, state: PersistedState) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._store.write(state))
        log.info(json.dumps({"event": "state_saved", **state.to_dict()}))
