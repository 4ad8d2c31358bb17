#!/usr/bin/env python3
"""
zeroplex - keep host DNS in step with ZeroTier networks.

Reads joined networks from the local ZeroTier service, filters them, and
configures per-interface DNS servers and search domains through either
systemd-networkd (unit files) or systemd-resolved (runtime link settings).

Configuration comes from ZEROPLEX_* environment variables, optionally layered
over a YAML file at ZEROPLEX_CONFIG_PATH (default /etc/zeroplex.yaml).
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Any, List, Optional

from zeroplex.backends import DNSBackend, DNSFeatures, create_backend
from zeroplex.config import Settings, load_settings, validate_settings
from zeroplex.daemon import Daemon, format_interval
from zeroplex.directory import ZeroTierClient
from zeroplex.models import BackendUnavailableError, ConfigError, InterfaceEvent
from zeroplex.reconciler import Reconciler
from zeroplex.system import CommandRunner
from zeroplex.triggers import DNSWatchdog, HealthCheck, PingCheck, ResolveCheck, SleepResumeWatcher
from zeroplex.watcher import InterfaceMonitor, create_watcher

logger = logging.getLogger("zeroplex")

# =============================================================================
# Logging Setup
# =============================================================================


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Wiring
# =============================================================================


def build_backend(settings: Settings, runner: CommandRunner) -> DNSBackend:
    features = DNSFeatures(
        add_reverse_domains=settings.add_reverse_domains,
        dns_over_tls=settings.dns_over_tls,
        multicast_dns=settings.multicast_dns,
    )
    return create_backend(
        settings.mode,
        runner,
        features,
        dry_run=settings.dry_run,
        network_dir=settings.network_dir,
        auto_restart=settings.auto_restart,
        reconcile=settings.reconcile,
        restore_on_exit=settings.restore_on_exit,
    )


def build_reconciler(settings: Settings, runner: Optional[CommandRunner] = None) -> Reconciler:
    """Create the directory client and backend; raises if the backend is unusable."""
    runner = runner or CommandRunner()
    backend = build_backend(settings, runner)
    backend.check_available()
    directory = ZeroTierClient(settings.host, settings.port, token_file=settings.token_file)
    return Reconciler(directory, backend, settings.filters)


def build_watchdog(
    settings: Settings, reconciler: Reconciler, runner: CommandRunner, daemon: Daemon
) -> Optional[DNSWatchdog]:
    if not settings.watchdog_enabled or settings.watchdog_interval_seconds <= 0:
        return None
    check: HealthCheck
    if settings.watchdog_hostname:
        check = ResolveCheck(
            settings.watchdog_hostname,
            settings.watchdog_expected_ip,
            domains=reconciler.network_domains,
        )
    else:
        check = PingCheck(runner, settings.watchdog_ip)
    return DNSWatchdog(check, daemon.trigger, settings.watchdog_interval_seconds)


def build_trigger_sources(
    settings: Settings, reconciler: Reconciler, runner: CommandRunner, daemon: Daemon
) -> List[Any]:
    """Everything besides the interval timer that can request a pass."""
    sources: List[Any] = []

    watcher = create_watcher(settings.interface_watch, settings.poll_interval_seconds)
    if watcher is not None:

        def on_batch(events: List[InterfaceEvent]) -> None:
            names = sorted({e.name for e in events})
            daemon.trigger(f"interface change: {', '.join(names)}")

        sources.append(
            InterfaceMonitor(
                watcher,
                on_batch,
                debounce_seconds=settings.debounce_seconds,
                prefix=settings.interface_prefix,
            )
        )

    watchdog = build_watchdog(settings, reconciler, runner, daemon)
    if watchdog is not None:
        sources.append(watchdog)

    if settings.resume_watch:
        if runner.exists("busctl"):
            sources.append(SleepResumeWatcher(daemon.trigger))
        else:
            logger.warning("busctl not found; sleep/resume watch disabled")

    return sources


def run_watch(
    settings: Settings,
    reconciler: Reconciler,
    stop: threading.Event,
    runner: Optional[CommandRunner] = None,
) -> None:
    """Run the daemon and its trigger sources until stop is set.

    Shutdown order: trigger sources, then the daemon (waiting for an
    in-flight pass), then the backend's exit restore.
    """
    runner = runner or CommandRunner()
    daemon = Daemon(settings.interval_seconds, reconciler.run)
    sources = build_trigger_sources(settings, reconciler, runner, daemon)

    try:
        daemon.start()
        for source in sources:
            source.start()
        stop.wait()
    finally:
        logger.info("Shutting down gracefully...")
        for source in sources:
            source.stop(timeout=5)
        daemon.stop()
        reconciler.shutdown()


# =============================================================================
# Main
# =============================================================================


def main() -> None:
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigError as e:
        configure_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(settings.log_level)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    runner = CommandRunner()
    try:
        reconciler = build_reconciler(settings, runner)
    except (BackendUnavailableError, ValueError) as e:
        logger.error(f"Cannot start: {e}")
        sys.exit(1)

    logger.info(f"zeroplex: {reconciler.directory.name} -> {reconciler.backend.name}")
    logger.info(f"ZeroTier API: {settings.host}:{settings.port}")
    if settings.profile:
        logger.info(f"Profile: {settings.profile}")
    if settings.filters:
        logger.info(f"Filters: {len(settings.filters)} rule(s) configured")
    if settings.dry_run:
        logger.info("Dry-run mode: no changes will be made")

    if not reconciler.directory.test_connection():
        logger.warning(f"{reconciler.directory.name} is not reachable yet; continuing")

    interval = settings.interval_seconds
    one_shot = settings.sync_mode == "once" or interval <= 0
    logger.info(f"Sync mode: {'once' if one_shot else 'watch'}")

    if one_shot:
        # settings applied by a single pass are left in place
        if not Daemon(0, reconciler.run, name="once").run_once():
            sys.exit(1)
        return

    logger.info(f"Interval: {format_interval(interval)}")
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}")
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        run_watch(settings, reconciler, stop, runner)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
