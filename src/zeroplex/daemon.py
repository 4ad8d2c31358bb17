"""Reconciliation scheduler.

The daemon owns a single worker thread, which is the only place the
reconciliation task ever runs. The interval timer and external triggers
(interface watch batches) both wake that thread; a trigger that arrives
while a pass is in flight is coalesced into the next pass.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from enum import Enum
from typing import Callable, Optional

from zeroplex.models import ZeroplexError

logger = logging.getLogger(__name__)

DISABLED_VALUES = {"0", "false", "disabled", "off"}

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
    "w": 604800.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h|d|w)")


def parse_interval(value: str) -> float:
    """Parse an interval into seconds; 0 means disabled.

    Accepts plain seconds ("60"), durations ("30s", "1h30m", "2d", "1w")
    and the disabled spellings 0/false/disabled/off.

    Raises:
        ValueError: if the value cannot be parsed
    """
    text = str(value).strip().lower()
    if not text:
        raise ValueError("interval is empty")
    if text in DISABLED_VALUES:
        return 0.0
    if text.isdigit():
        return float(text)

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid interval: {value!r}")
    return total


def format_interval(seconds: float) -> str:
    if seconds <= 0:
        return "disabled"
    remaining = int(round(seconds))
    if remaining == 0:
        return f"{seconds}s"
    parts = []
    for unit, size in (("w", 604800), ("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        count, remaining = divmod(remaining, size)
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)


class DaemonState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class Daemon:
    """Runs a task immediately and then on every interval tick."""

    def __init__(self, interval_seconds: float, task: Callable[[], object], name: str = "reconcile"):
        self._interval = interval_seconds
        self._task = task
        self._name = name
        self._state = DaemonState.IDLE
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._pending_reason = ""
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    @property
    def state(self) -> DaemonState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is DaemonState.RUNNING

    @property
    def in_flight(self) -> bool:
        return self._run_lock.locked()

    def start(self) -> bool:
        """Start the loop. Returns False when the interval is disabled."""
        if self._interval <= 0:
            logger.info("Interval disabled; daemon loop not started")
            return False
        with self._state_lock:
            if self._state is not DaemonState.IDLE:
                raise RuntimeError(f"daemon cannot start from state {self._state.value}")
            self._state = DaemonState.RUNNING
        logger.info(f"Daemon started; running every {format_interval(self._interval)}")
        self.trigger("startup")
        self._thread = threading.Thread(target=self._loop, name=f"zeroplex-{self._name}", daemon=True)
        self._thread.start()
        return True

    def trigger(self, reason: str) -> None:
        """Request a pass as soon as the worker is free."""
        if not self.is_running:
            logger.debug(f"Ignoring trigger '{reason}'; daemon is {self.state.value}")
            return
        if self._wake.is_set():
            logger.debug(f"Trigger '{reason}' coalesced with pending '{self._pending_reason}'")
            return
        if self.in_flight:
            logger.debug(f"Pass in flight; trigger '{reason}' queued for the next pass")
        self._pending_reason = reason
        self._wake.set()

    def run_once(self, reason: str = "once") -> bool:
        """Run the task on the calling thread. Returns False if it failed."""
        with self._run_lock:
            return self._run_task(reason)

    def _run_task(self, reason: str) -> bool:
        self.runs += 1
        logger.debug(f"Reconciliation pass #{self.runs} ({reason})")
        try:
            self._task()
            return True
        except ZeroplexError as e:
            logger.error(f"Reconciliation failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected error during reconciliation: {e}", exc_info=True)
        return False

    def _loop(self) -> None:
        next_tick = time.monotonic() + self._interval
        while not self._stop.is_set():
            woke = self._wake.wait(max(0.0, next_tick - time.monotonic()))
            if self._stop.is_set():
                break
            if woke:
                self._wake.clear()
                reason = self._pending_reason or "trigger"
            else:
                reason = "interval"

            with self._run_lock:
                self._run_task(reason)

            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // self._interval)
                if missed:
                    logger.debug(f"Skipped {missed} tick(s) while a pass was running")
                next_tick += (missed + 1) * self._interval

        with self._state_lock:
            self._state = DaemonState.STOPPED
        logger.info("Daemon stopped")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the in-flight pass, if any, completes."""
        with self._state_lock:
            if self._state is DaemonState.IDLE:
                self._state = DaemonState.STOPPED
                return
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
