"""Interface change watching.

A watcher strategy produces one InterfaceEvent per raw link change. Events
flow through an InterfaceMonitor, which drops interfaces outside the
configured prefix and hands the rest to an EventDebouncer. The debouncer
owns a queue and a thread; once no event has arrived for the quiet window it
delivers the buffered batch in a single callback.
"""

from __future__ import annotations

import logging
import queue
import select
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from zeroplex import system
from zeroplex.models import InterfaceEvent, InterfaceEventKind

logger = logging.getLogger(__name__)

EventCallback = Callable[[InterfaceEvent], None]
BatchCallback = Callable[[List[InterfaceEvent]], None]


# =============================================================================
# Watcher Strategies
# =============================================================================


class InterfaceWatcher(ABC):
    """Abstract source of interface change events."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def watch(self, callback: EventCallback, stop: threading.Event) -> None:
        """Block, calling callback per event, until stop is set.

        No callback is made once stop has been observed.
        """
        pass


def diff_snapshots(previous: Dict[str, int], current: Dict[str, int]) -> List[InterfaceEvent]:
    """Synthesize added/removed events between two {name: index} snapshots."""
    events = [
        InterfaceEvent(name=name, kind=InterfaceEventKind.REMOVED, index=previous[name])
        for name in sorted(set(previous) - set(current))
    ]
    events.extend(
        InterfaceEvent(name=name, kind=InterfaceEventKind.ADDED, index=current[name])
        for name in sorted(set(current) - set(previous))
    )
    return events


class PollInterfaceWatcher(InterfaceWatcher):
    """Periodically lists host links and diffs against the last listing."""

    def __init__(
        self,
        interval_seconds: float = 5.0,
        list_links: Callable[[], Dict[str, int]] = system.list_links,
    ):
        self._interval = interval_seconds
        self._list_links = list_links

    @property
    def name(self) -> str:
        return "poll"

    def _snapshot(self) -> Optional[Dict[str, int]]:
        try:
            return self._list_links()
        except (NetlinkError, OSError) as e:
            logger.warning(f"Failed to list interfaces: {e}")
            return None

    def watch(self, callback: EventCallback, stop: threading.Event) -> None:
        previous = self._snapshot() or {}
        logger.debug(f"Polling {len(previous)} interfaces every {self._interval}s")
        while not stop.wait(self._interval):
            current = self._snapshot()
            if current is None:
                continue
            for event in diff_snapshots(previous, current):
                if stop.is_set():
                    return
                callback(event)
            previous = current


def classify_link_message(message: Any, known: Dict[int, str]) -> Optional[InterfaceEvent]:
    """Turn one RTM_NEWLINK/RTM_DELLINK message into an InterfaceEvent.

    `known` maps link index to name and is updated in place, so that a
    NEWLINK for an index not seen before is reported as added.
    """
    event_type = message.get("event")
    index = message.get("index") or 0
    name = message.get_attr("IFLA_IFNAME") or known.get(index, "")

    if event_type == "RTM_DELLINK":
        known.pop(index, None)
        return InterfaceEvent(name=name, kind=InterfaceEventKind.REMOVED, index=index)

    if event_type == "RTM_NEWLINK":
        if index not in known:
            known[index] = name
            return InterfaceEvent(name=name, kind=InterfaceEventKind.ADDED, index=index)
        known[index] = name
        if message.get_attr("IFLA_OPERSTATE") == "UP":
            return InterfaceEvent(name=name, kind=InterfaceEventKind.UP, index=index)
        return InterfaceEvent(name=name, kind=InterfaceEventKind.DOWN, index=index)

    return None


class NetlinkInterfaceWatcher(InterfaceWatcher):
    """Subscribes to kernel link notifications through pyroute2.

    Falls back to polling if the netlink subscription cannot be made.
    """

    def __init__(
        self,
        fallback: Optional[InterfaceWatcher] = None,
        select_timeout: float = 1.0,
        iproute_factory: Callable[[], Any] = IPRoute,
    ):
        self._fallback = fallback or PollInterfaceWatcher()
        self._select_timeout = select_timeout
        self._iproute_factory = iproute_factory

    @property
    def name(self) -> str:
        return "event"

    def watch(self, callback: EventCallback, stop: threading.Event) -> None:
        ipr = None
        try:
            ipr = self._iproute_factory()
            ipr.bind()
        except (NetlinkError, OSError) as e:
            if ipr is not None:
                ipr.close()
            logger.warning(
                f"Netlink subscription failed ({e}); falling back to {self._fallback.name} watcher"
            )
            self._fallback.watch(callback, stop)
            return

        try:
            known: Dict[int, str] = {}
            for link in ipr.get_links():
                known[link["index"]] = link.get_attr("IFLA_IFNAME") or ""
            logger.debug(f"Watching netlink link changes ({len(known)} interfaces present)")

            while not stop.is_set():
                ready, _, _ = select.select([ipr], [], [], self._select_timeout)
                if not ready:
                    continue
                for message in ipr.get():
                    if stop.is_set():
                        return
                    event = classify_link_message(message, known)
                    if event is not None:
                        callback(event)
        finally:
            ipr.close()


# =============================================================================
# Debouncing
# =============================================================================


_STOP = object()


class EventDebouncer:
    """Buffers events and delivers them as one batch after a quiet window."""

    def __init__(self, callback: BatchCallback, quiet_window_seconds: float):
        self._callback = callback
        self._quiet = quiet_window_seconds
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def submit(self, event: InterfaceEvent) -> None:
        if not self._stopped.is_set():
            self._queue.put(event)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="zeroplex-debounce", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop delivering. Buffered events that were not yet delivered are dropped."""
        self._stopped.set()
        self._queue.put(_STOP)
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        batch: List[InterfaceEvent] = []
        while True:
            try:
                item = self._queue.get(timeout=self._quiet if batch else None)
            except queue.Empty:
                if self._stopped.is_set():
                    return
                delivered, batch = batch, []
                logger.debug(f"Delivering {len(delivered)} interface event(s)")
                try:
                    self._callback(delivered)
                except Exception as e:
                    logger.error(f"Interface event callback failed: {e}", exc_info=True)
                continue

            if item is _STOP:
                if batch:
                    logger.debug(f"Dropping {len(batch)} undelivered interface event(s)")
                return
            batch.append(item)


class InterfaceMonitor:
    """Runs a watcher on its own thread and feeds a debouncer.

    Interfaces whose name does not start with `prefix` are ignored; an empty
    prefix accepts everything.
    """

    def __init__(
        self,
        watcher: InterfaceWatcher,
        on_batch: BatchCallback,
        debounce_seconds: float = 2.0,
        prefix: str = "zt",
    ):
        self._watcher = watcher
        self._prefix = prefix
        self._debouncer = EventDebouncer(on_batch, debounce_seconds)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _on_event(self, event: InterfaceEvent) -> None:
        if self._prefix and not event.name.startswith(self._prefix):
            return
        logger.debug(f"Interface {event.name} {event.kind.value} (index {event.index})")
        self._debouncer.submit(event)

    def _run(self) -> None:
        try:
            self._watcher.watch(self._on_event, self._stop)
        except Exception as e:
            logger.error(f"Interface watcher stopped unexpectedly: {e}", exc_info=True)

    def start(self) -> None:
        self._debouncer.start()
        self._thread = threading.Thread(target=self._run, name="zeroplex-watch", daemon=True)
        self._thread.start()
        logger.info(f"Interface watch enabled ({self._watcher.name}, prefix '{self._prefix}')")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._debouncer.stop(timeout)


def create_watcher(mode: str, poll_interval_seconds: float = 5.0) -> Optional[InterfaceWatcher]:
    """Factory for the configured watch strategy; None when watching is off."""
    mode = mode.lower().strip()
    if mode in ("off", "none", "disabled", ""):
        return None
    poller = PollInterfaceWatcher(poll_interval_seconds)
    if mode == "poll":
        return poller
    if mode == "event":
        return NetlinkInterfaceWatcher(fallback=poller)
    raise ValueError(f"Unsupported interface watch mode: '{mode}'. Supported: event, poll, off")
