"""Extra reconciliation triggers.

Both sources run on their own thread and only ever call a trigger callback
(normally Daemon.trigger), so passes still run on the daemon's worker:

    DNSWatchdog:        runs a health check every interval and requests a
                        pass when the check reports failures.
    SleepResumeWatcher: follows logind's PrepareForSleep signal through
                        `busctl monitor` and requests a pass on resume.

Neither retries on its own; a failed check is looked at again on the next
watchdog tick.
"""

from __future__ import annotations

import json
import logging
import socket
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from zeroplex.models import CommandError, DirectoryServiceError
from zeroplex.system import CommandRunner

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[str], None]

DOMAIN_PLACEHOLDER = "%domain%"
PING_TIMEOUT_SECONDS = 2


# =============================================================================
# Health Checks
# =============================================================================


class HealthCheck(ABC):
    """Abstract DNS health check."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def failures(self) -> List[str]:
        """Return one message per failed lookup; empty when healthy."""
        pass


class PingCheck(HealthCheck):
    """Healthy while an address answers a single ICMP echo."""

    def __init__(self, runner: CommandRunner, address: str):
        self._runner = runner
        self._address = address

    @property
    def name(self) -> str:
        return f"ping {self._address}"

    def failures(self) -> List[str]:
        try:
            self._runner.run(["ping", "-c", "1", "-W", str(PING_TIMEOUT_SECONDS), self._address])
        except CommandError as e:
            return [f"{self._address} unreachable ({e.returncode})"]
        logger.debug(f"DNS watchdog: {self._address} is reachable")
        return []


def resolve_host(hostname: str) -> List[str]:
    """Addresses the host resolver returns for hostname.

    Raises:
        OSError: when the name does not resolve
    """
    infos = socket.getaddrinfo(hostname, None)
    return sorted({info[4][0] for info in infos})


def expand_hostname(template: str, domains: List[str]) -> List[str]:
    if DOMAIN_PLACEHOLDER not in template:
        return [template]
    return [template.replace(DOMAIN_PLACEHOLDER, domain) for domain in domains]


class ResolveCheck(HealthCheck):
    """Healthy while every expanded hostname resolves to the expected address.

    A `%domain%` placeholder in the hostname is replaced by each network
    domain returned by `domains`, which is asked again on every check.
    """

    def __init__(
        self,
        hostname: str,
        expected_ip: str,
        domains: Optional[Callable[[], List[str]]] = None,
        resolve: Callable[[str], List[str]] = resolve_host,
    ):
        self._hostname = hostname
        self._expected_ip = expected_ip
        self._domains = domains or (lambda: [])
        self._resolve = resolve

    @property
    def name(self) -> str:
        return f"resolve {self._hostname} -> {self._expected_ip}"

    def _hostnames(self) -> List[str]:
        if DOMAIN_PLACEHOLDER not in self._hostname:
            return [self._hostname]
        try:
            domains = self._domains()
        except DirectoryServiceError as e:
            logger.warning(f"DNS watchdog: cannot list network domains: {e}")
            return []
        if not domains:
            logger.debug(f"DNS watchdog: no network domains to substitute into {self._hostname}")
        return expand_hostname(self._hostname, domains)

    def failures(self) -> List[str]:
        failed = []
        for host in self._hostnames():
            try:
                addresses = self._resolve(host)
            except OSError as e:
                failed.append(f"{host} does not resolve ({e})")
                continue
            if self._expected_ip not in addresses:
                failed.append(f"{host} resolves to {addresses}, expected {self._expected_ip}")
            else:
                logger.debug(f"DNS watchdog: {host} resolves to {self._expected_ip}")
        return failed


# =============================================================================
# Watchdog
# =============================================================================


class DNSWatchdog:
    """Runs a health check every interval and triggers a pass on failure."""

    def __init__(self, check: HealthCheck, on_failure: TriggerCallback, interval_seconds: float = 60.0):
        self._check = check
        self._on_failure = on_failure
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_once(self) -> bool:
        """Run the check. Returns True when healthy."""
        failed = self._check.failures()
        if not failed:
            return True
        for message in failed:
            logger.warning(f"DNS watchdog: {message}")
        self._on_failure(f"watchdog: {self._check.name}")
        return False

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"DNS watchdog check failed: {e}", exc_info=True)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="zeroplex-watchdog", daemon=True)
        self._thread.start()
        logger.info(f"DNS watchdog enabled ({self._check.name}, every {self._interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


# =============================================================================
# Sleep / Resume
# =============================================================================


LOGIND_MATCH = (
    "type='signal',"
    "sender='org.freedesktop.login1',"
    "path='/org/freedesktop/login1',"
    "interface='org.freedesktop.login1.Manager',"
    "member='PrepareForSleep'"
)
MONITOR_COMMAND = ["busctl", "monitor", "--system", "--json=short", f"--match={LOGIND_MATCH}"]


def parse_sleep_signal(line: str) -> Optional[bool]:
    """PrepareForSleep argument from one `busctl monitor --json=short` line.

    True means the system is about to sleep, False that it has resumed;
    None for anything else.
    """
    try:
        message = json.loads(line)
    except ValueError:
        return None
    if not isinstance(message, dict) or message.get("member") != "PrepareForSleep":
        return None
    payload = message.get("payload")
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list) or len(data) != 1 or not isinstance(data[0], bool):
        return None
    return data[0]


def spawn_monitor(args: List[str]) -> Any:
    return subprocess.Popen(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        text=True,
    )


class SleepResumeWatcher:
    """Triggers a pass each time the system resumes from sleep."""

    def __init__(
        self,
        on_resume: TriggerCallback,
        process_factory: Callable[[List[str]], Any] = spawn_monitor,
    ):
        self._on_resume = on_resume
        self._process_factory = process_factory
        self._lock = threading.Lock()
        self._process: Any = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _spawn(self) -> Any:
        with self._lock:
            if self._stop.is_set():
                return None
            try:
                self._process = self._process_factory(MONITOR_COMMAND)
            except OSError as e:
                logger.warning(f"Cannot follow sleep/resume signals: {e}")
                return None
            return self._process

    def _run(self) -> None:
        process = self._spawn()
        if process is None:
            return
        try:
            for line in process.stdout:
                if self._stop.is_set():
                    break
                sleeping = parse_sleep_signal(line)
                if sleeping is None:
                    continue
                if sleeping:
                    logger.info("System is preparing to sleep")
                    continue
                logger.info("System resumed; requesting reconciliation")
                self._on_resume("resume")
        finally:
            if process.poll() is None:
                process.terminate()
            process.wait()
        if not self._stop.is_set():
            logger.warning(f"busctl monitor exited ({process.returncode}); sleep/resume watch stopped")

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="zeroplex-resume", daemon=True)
        self._thread.start()
        logger.info("Sleep/resume watch enabled")

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._stop.set()
            if self._process is not None and self._process.poll() is None:
                self._process.terminate()
        if self._thread is not None:
            self._thread.join(timeout)
