"""
Logging for the rebalancer.

Components emit one JSON object per event (`{"event": ..., **fields}`).
The console shows those lines through Rich; the file sink lifts the event
fields into a flat JSON line with timestamp and level, written by a
background thread so a slow disk never stalls the event loop.

Retry storms (`http_retry`, `send_retry`) and watcher poll errors can fire
every few hundred milliseconds while an RPC node is down; ThrottledFilter
lets the first one per label through and mutes repeats for a cooldown.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import queue
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from rich.logging import RichHandler


# Severity conventions
CRITICAL_SAFETY = logging.CRITICAL  # Position lost track of, state file unreadable
ERROR = logging.ERROR               # Transaction failed for good, cycle aborted
WARNING = logging.WARNING           # Expiry, slippage rebuilds, retries
INFO = logging.INFO                 # Open, close, swap, cycle summaries
DEBUG = logging.DEBUG               # Watcher polls, in-band holds

DEFAULT_THROTTLED_EVENTS = frozenset({"http_retry", "send_retry", "watch_poll_error"})


def _event_fields(record: logging.LogRecord) -> Optional[Dict[str, Any]]:
    """The record's message as a dict when it is a JSON event line."""
    msg = record.getMessage()
    if not msg.startswith("{"):
        return None
    try:
        data = json.loads(msg)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """One flat JSON object per record, event fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = _event_fields(record)
        if fields is None:
            line["msg"] = record.getMessage()
        else:
            line.update(fields)
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Hands records to a daemon writer thread.

    `emit` never blocks: when the queue is full the record is dropped and
    counted, and the count is reported on close.
    """

    def __init__(self, target: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._target = target
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        self._dropped = 0
        self._writer = threading.Thread(target=self._drain, daemon=True, name="lpbot-log-writer")
        self._writer.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _drain(self) -> None:
        while True:
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._closed:
                    return
                continue
            try:
                self._target.emit(record)
            except Exception:
                self.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.join(timeout=2.0)
        if self._dropped:
            sys.stderr.write(f"[lpbot] {self._dropped} log records dropped (queue full)\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Mutes repeats of noisy events.

    Events are keyed by name and `label` (the retried operation); each key
    passes at most once per `cooldown_sec`. Everything else passes.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Iterable[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._events = frozenset(throttled_events or DEFAULT_THROTTLED_EVENTS)
        self._last_passed: Dict[str, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _event_fields(record)
        if fields is None or fields.get("event") not in self._events:
            return True
        key = f"{fields['event']}:{fields.get('label', '')}"
        now = time.monotonic()
        last = self._last_passed.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_passed[key] = now
        return True


def build_logger(
    name: str = "lpbot",
    level: int = logging.INFO,
    file_path: Optional[str] = "logs/lpbot.jsonl",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the process logger.

    Args:
        name: Logger name; components log to "lpbot"
        level: Minimum level for the logger and every handler
        file_path: JSON-lines sink (None disables it)
        async_file: Write the sink from the background thread
        throttle_warnings: Mute repeated retry/poll-error events on the console

    Safe to call twice: a configured logger only has its levels updated.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        parent = os.path.dirname(file_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        sink = logging.FileHandler(file_path)
        sink.setFormatter(JsonFormatter())
        sink.setLevel(level)
        handler: logging.Handler = AsyncQueueHandler(sink) if async_file else sink
        handler.setLevel(level)
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data: Any) -> None:
    """
    Emit one structured event.

        log_event(log, "startup", wallet=str(pubkey), whirlpool=address)
    """
    logger.log(level, json.dumps({"event": event, **data}, default=str))
