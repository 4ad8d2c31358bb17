"""Host DNS backends.

Two backends reconcile desired per-interface DNS state with the host:

    networkd: writes /etc/systemd/network/99-<iface>.network unit files and
              asks systemd-networkd to reload once per pass.
    resolved: sets per-link DNS servers, search domains, DNS-over-TLS and
              mDNS on systemd-resolved at runtime, remembering what each
              link looked like before it was first touched so that it can
              be reverted later.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from zeroplex.models import (
    BackendUnavailableError,
    CommandError,
    ControlPlaneUnavailable,
    DesiredInterfaceState,
    ManagedInterfaceRecord,
    NetworkDescriptor,
    ReconcileResult,
)
from zeroplex.reverse import reverse_domains
from zeroplex.system import CommandRunner

logger = logging.getLogger(__name__)

NETWORKD_SERVICE = "systemd-networkd.service"
RESOLVED_SERVICE = "systemd-resolved.service"
NETWORKD_DIR = "/etc/systemd/network"
MANAGED_HEADER = "--- Managed by zeroplex. Do not remove this comment. ---"
MANAGED_MARKER = f"# {MANAGED_HEADER}"


# =============================================================================
# Desired State
# =============================================================================


@dataclass(frozen=True)
class DNSFeatures:
    add_reverse_domains: bool = False
    dns_over_tls: bool = False
    multicast_dns: bool = False


def build_desired_state(
    network: NetworkDescriptor, features: DNSFeatures
) -> DesiredInterfaceState:
    domains = set()
    if network.dns_domain:
        domains.add(network.dns_domain)
    if features.add_reverse_domains:
        domains.update(reverse_domains(network.assigned_addresses))

    ordered: List[str] = []
    for server in network.dns_servers:
        if server not in ordered:
            ordered.append(server)

    return DesiredInterfaceState(
        interface=network.interface,
        network_name=network.name or network.id,
        dns_servers=frozenset(ordered),
        search_domains=frozenset(domains),
        dns_over_tls=features.dns_over_tls,
        multicast_dns=features.multicast_dns,
        ordered_servers=tuple(ordered),
    )


def desired_states(
    networks: Iterable[NetworkDescriptor], features: DNSFeatures
) -> Dict[str, DesiredInterfaceState]:
    """Desired state for every network that has an interface and DNS servers."""
    states: Dict[str, DesiredInterfaceState] = {}
    for network in networks:
        if not network.interface:
            continue
        if not network.dns_servers:
            logger.debug(f"Network {network.display_name} advertises no DNS servers; skipping")
            continue
        if network.interface in states:
            logger.warning(
                f"Interface {network.interface} reported by more than one network; "
                f"using the first"
            )
            continue
        states[network.interface] = build_desired_state(network, features)
    return states


def same_set(current: Iterable[str], desired: Iterable[str]) -> bool:
    return {c.strip() for c in current if c.strip()} == {d.strip() for d in desired if d.strip()}


# =============================================================================
# Backend Interface
# =============================================================================


class DNSBackend(ABC):
    """Abstract base class for host DNS backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the backend name for logging."""
        pass

    @abstractmethod
    def check_available(self) -> None:
        """Raise BackendUnavailableError if the backend cannot run here."""
        pass

    @abstractmethod
    def apply(self, networks: Sequence[NetworkDescriptor]) -> ReconcileResult:
        """Reconcile host state with the filtered network list."""
        pass

    def handle_upstream_failure(self) -> List[str]:
        """Called when the network list could not be fetched."""
        return []

    def shutdown(self) -> List[str]:
        """Called once when the process is exiting."""
        return []


# =============================================================================
# systemd-networkd
# =============================================================================


def network_file_name(interface: str) -> str:
    return f"99-{interface}.network"


def render_network_file(state: DesiredInterfaceState) -> str:
    lines = [
        MANAGED_MARKER,
        "[Match]",
        f"Name={state.interface}",
        "",
        "[Network]",
        f"Description={state.network_name}",
        "DHCP=no",
    ]
    lines.extend(f"DNS={server}" for server in state.ordered_servers)
    if state.dns_over_tls:
        lines.append("DNSOverTLS=yes")
    if state.multicast_dns:
        lines.append("MulticastDNS=yes")
    if state.search_domains:
        lines.append(f"Domains=~{' '.join(state.sorted_domains)}")
    lines.append("ConfigureWithoutCarrier=true")
    lines.append("KeepConfiguration=static")
    return "\n".join(lines) + "\n"


class NetworkdBackend(DNSBackend):
    """Declarative unit-file backend for systemd-networkd."""

    def __init__(
        self,
        runner: CommandRunner,
        features: DNSFeatures,
        *,
        network_dir: str = NETWORKD_DIR,
        auto_restart: bool = True,
        reconcile: bool = True,
        dry_run: bool = False,
    ):
        self._runner = runner
        self._features = features
        self._dir = Path(network_dir)
        self._auto_restart = auto_restart
        self._reconcile = reconcile
        self._dry_run = dry_run

    @property
    def name(self) -> str:
        return "networkd"

    def check_available(self) -> None:
        if not self._runner.service_exists(NETWORKD_SERVICE):
            raise BackendUnavailableError(f"{NETWORKD_SERVICE} is not available")
        if not self._dir.is_dir():
            raise BackendUnavailableError(f"Network directory {self._dir} does not exist")

    def managed_files(self) -> Dict[str, Path]:
        """Files in the network directory that carry the managed marker.

        Returns:
            Mapping of interface name to file path
        """
        managed: Dict[str, Path] = {}
        for path in sorted(self._dir.glob("99-*.network")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    first = f.readline()
            except OSError as e:
                logger.warning(f"Could not read {path}: {e}")
                continue
            if first.rstrip("\n") != MANAGED_MARKER:
                continue
            interface = path.name[len("99-") : -len(".network")]
            managed[interface] = path
        return managed

    def _write_if_changed(self, path: Path, content: str) -> bool:
        data = content.encode("utf-8")
        try:
            if path.read_bytes() == data:
                return False
        except FileNotFoundError:
            pass
        if self._dry_run:
            logger.info(f"[dry-run] Would write {path}")
            return True
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_bytes(data)
            os.chmod(tmp_path, 0o644)
            tmp_path.replace(path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return True

    def apply(self, networks: Sequence[NetworkDescriptor]) -> ReconcileResult:
        result = ReconcileResult(backend=self.name)
        previously_managed = self.managed_files()
        desired = desired_states(networks, self._features)
        service_available = self._runner.service_exists(NETWORKD_SERVICE)
        if not service_available:
            logger.debug(f"{NETWORKD_SERVICE} is not available; changes will not be reloaded")

        for interface, state in sorted(desired.items()):
            path = self._dir / network_file_name(interface)
            content = render_network_file(state)
            try:
                written = self._write_if_changed(path, content)
            except OSError as e:
                logger.warning(f"Failed to write {path}: {e}")
                result.failed.append(interface)
                continue

            if written:
                result.written.append(interface)
                logger.info(
                    f"Wrote {path}: DNS={list(state.ordered_servers)} "
                    f"Domains={state.sorted_domains}"
                )
            else:
                result.unchanged.append(interface)
                logger.debug(f"No changes needed for {path}; already up-to-date")

        stale = {i: p for i, p in previously_managed.items() if i not in desired}
        for interface, path in sorted(stale.items()):
            result.stale.append(interface)
            if not self._reconcile:
                logger.warning(f"Stale file {path} left in place (reconcile disabled)")
                continue
            if self._dry_run:
                logger.info(f"[dry-run] Would remove stale file {path}")
                result.deleted.append(interface)
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove stale file {path}: {e}")
                result.failed.append(interface)
                continue
            logger.info(f"Removed stale file {path}")
            result.deleted.append(interface)

        if (result.written or result.deleted) and self._auto_restart and service_available:
            if self._dry_run:
                logger.info("[dry-run] Would reload systemd-networkd")
            else:
                logger.info("Files changed; reloading systemd-networkd")
                try:
                    self._runner.run(["networkctl", "reload"])
                    result.reloaded = True
                except CommandError as e:
                    logger.error(f"Failed to reload systemd-networkd: {e}")

        return result


# =============================================================================
# systemd-resolved
# =============================================================================


def parse_link_values(output: str) -> List[str]:
    """Parse `resolvectl <verb> <iface>` output.

    Lines look like "Link 3 (zt0): 10.0.0.1 10.0.0.2"; everything after the
    first colon is split on whitespace.
    """
    values: List[str] = []
    for line in output.strip().splitlines():
        line = line.strip()
        if not line.startswith("Link "):
            continue
        _, sep, rest = line.partition(":")
        if sep:
            values.extend(rest.split())
    return values


def encode_dns_servers(servers: Sequence[str]) -> List[Tuple[int, bytes]]:
    """Servers as (address family, packed address) pairs."""
    encoded: List[Tuple[int, bytes]] = []
    for server in servers:
        try:
            addr = ipaddress.ip_address(server.strip())
        except ValueError:
            logger.warning(f"Ignoring invalid DNS server address {server!r}")
            continue
        family = socket.AF_INET if addr.version == 4 else socket.AF_INET6
        encoded.append((int(family), addr.packed))
    return encoded


def encode_search_domains(domains: Sequence[str]) -> List[Tuple[str, bool]]:
    """Domains as (name, routing-only) pairs; "~" marks routing-only."""
    return [(d[1:], True) if d.startswith("~") else (d, False) for d in domains if d]


def _yes_no(enabled: bool) -> str:
    return "yes" if enabled else "no"


class ResolverControl:
    """Queries and mutates systemd-resolved link settings.

    Mutations go over D-Bus (through busctl) when the system bus is
    reachable and fall back to the equivalent resolvectl invocation.
    """

    BUS_NAME = "org.freedesktop.resolve1"
    OBJECT_PATH = "/org/freedesktop/resolve1"
    INTERFACE = "org.freedesktop.resolve1.Manager"
    SYSTEM_BUS_SOCKET = "/run/dbus/system_bus_socket"

    def __init__(self, runner: CommandRunner, use_control_plane: bool = True):
        self._runner = runner
        self._use_control_plane = use_control_plane

    def _control_plane_reachable(self) -> bool:
        return (
            self._use_control_plane
            and os.path.exists(self.SYSTEM_BUS_SOCKET)
            and self._runner.exists("busctl")
        )

    def _bus_call(self, interface: str, method: str, signature: str, args: List[str]) -> None:
        if not self._control_plane_reachable():
            raise ControlPlaneUnavailable("system bus is not reachable")
        index = self._runner.link_index(interface)
        if index is None:
            raise ControlPlaneUnavailable(f"no link index for {interface}")
        command = [
            "busctl",
            "call",
            self.BUS_NAME,
            self.OBJECT_PATH,
            self.INTERFACE,
            method,
            signature,
            str(index),
        ] + args
        try:
            self._runner.run(command)
        except CommandError as e:
            if e.is_missing_device:
                raise
            raise ControlPlaneUnavailable(str(e)) from e

    def _mutate(self, interface: str, bus: Tuple[str, str, List[str]], fallback: List[str]) -> None:
        method, signature, args = bus
        try:
            self._bus_call(interface, method, signature, args)
            return
        except ControlPlaneUnavailable as e:
            logger.debug(f"{method} over D-Bus unavailable ({e}); using resolvectl")
        self._runner.run(["resolvectl"] + fallback)

    # Queries

    def query_dns(self, interface: str) -> List[str]:
        return parse_link_values(self._runner.run(["resolvectl", "dns", interface]))

    def query_domains(self, interface: str) -> List[str]:
        return parse_link_values(self._runner.run(["resolvectl", "domain", interface]))

    def _query_flag(self, verb: str, interface: str) -> Optional[bool]:
        try:
            values = parse_link_values(self._runner.run(["resolvectl", verb, interface]))
        except CommandError as e:
            logger.warning(f"Could not query {verb} for {interface}: {e}")
            return None
        return bool(values) and values[0].lower() == "yes"

    def query_dns_over_tls(self, interface: str) -> Optional[bool]:
        return self._query_flag("dnsovertls", interface)

    def query_multicast_dns(self, interface: str) -> Optional[bool]:
        return self._query_flag("mdns", interface)

    # Mutations

    def set_dns(self, interface: str, servers: Sequence[str]) -> None:
        encoded = encode_dns_servers(servers)
        args = [str(len(encoded))]
        for family, packed in encoded:
            args += [str(family), str(len(packed))] + [str(b) for b in packed]
        self._mutate(
            interface,
            ("SetLinkDNS", "ia(iay)", args),
            ["dns", interface] + (list(servers) or [""]),
        )

    def set_domains(self, interface: str, domains: Sequence[str]) -> None:
        encoded = encode_search_domains(domains)
        args = [str(len(encoded))]
        for name, routing_only in encoded:
            args += [name, "true" if routing_only else "false"]
        self._mutate(
            interface,
            ("SetLinkDomains", "ia(sb)", args),
            ["domain", interface] + (list(domains) or [""]),
        )

    def set_dns_over_tls(self, interface: str, enabled: bool) -> None:
        self._mutate(
            interface,
            ("SetLinkDNSOverTLS", "is", [_yes_no(enabled)]),
            ["dnsovertls", interface, _yes_no(enabled)],
        )

    def set_multicast_dns(self, interface: str, enabled: bool) -> None:
        self._mutate(
            interface,
            ("SetLinkMulticastDNS", "is", [_yes_no(enabled)]),
            ["mdns", interface, _yes_no(enabled)],
        )

    def revert(self, interface: str) -> None:
        self._mutate(interface, ("RevertLink", "i", []), ["revert", interface])


class ManagedInterfaceStore:
    """Pre-change state of every interface the resolved backend touched.

    All access goes through one lock: the reconciliation task writes here and
    the shutdown path reads from another thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, ManagedInterfaceRecord] = {}

    def capture(self, interface: str, dns: Sequence[str], domains: Sequence[str]) -> bool:
        """Remember original state. Returns False if already captured."""
        with self._lock:
            if interface in self._records:
                return False
            self._records[interface] = ManagedInterfaceRecord(
                interface=interface,
                original_dns=tuple(dns),
                original_domains=tuple(domains),
            )
        logger.debug(f"Saved original DNS for {interface}: DNS={list(dns)} Search={list(domains)}")
        return True

    def mark_changed(self, interface: str) -> None:
        with self._lock:
            record = self._records.get(interface)
            if record is None:
                raise KeyError(f"{interface} has no captured state")
            record.changed = True

    def get(self, interface: str) -> Optional[ManagedInterfaceRecord]:
        with self._lock:
            record = self._records.get(interface)
            return replace(record) if record else None

    def remove(self, interface: str) -> None:
        with self._lock:
            self._records.pop(interface, None)

    def interfaces(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def changed_interfaces(self) -> List[str]:
        with self._lock:
            return sorted(i for i, r in self._records.items() if r.changed)

    def __contains__(self, interface: str) -> bool:
        with self._lock:
            return interface in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class ResolvedBackend(DNSBackend):
    """Live-service backend for systemd-resolved."""

    def __init__(
        self,
        runner: CommandRunner,
        features: DNSFeatures,
        *,
        control: Optional[ResolverControl] = None,
        store: Optional[ManagedInterfaceStore] = None,
        restore_on_exit: bool = True,
        dry_run: bool = False,
    ):
        self._runner = runner
        self._features = features
        self._control = control or ResolverControl(runner)
        self._store = store if store is not None else ManagedInterfaceStore()
        self._restore_on_exit = restore_on_exit
        self._dry_run = dry_run
        # apply() and restore paths may be entered from different threads
        self._pass_lock = threading.RLock()

    @property
    def name(self) -> str:
        return "resolved"

    @property
    def store(self) -> ManagedInterfaceStore:
        return self._store

    def check_available(self) -> None:
        if not self._runner.service_active(RESOLVED_SERVICE):
            raise BackendUnavailableError("systemd-resolved is not running")
        if not self._runner.exists("resolvectl"):
            raise BackendUnavailableError("resolvectl is required for systemd-resolved")

    def apply(self, networks: Sequence[NetworkDescriptor]) -> ReconcileResult:
        with self._pass_lock:
            result = ReconcileResult(backend=self.name)
            desired = desired_states(networks, self._features)

            for interface in self._store.interfaces():
                if interface in desired:
                    continue
                logger.info(f"Interface {interface} no longer present in ZeroTier networks")
                if self.restore(interface):
                    result.reverted.append(interface)

            for interface, state in sorted(desired.items()):
                try:
                    if self._reconcile_interface(state):
                        result.changed.append(interface)
                    else:
                        result.unchanged.append(interface)
                except CommandError as e:
                    logger.warning(f"Skipping {interface}: {e}")
                    result.failed.append(interface)
            return result

    def _reconcile_interface(self, state: DesiredInterfaceState) -> bool:
        interface = state.interface
        current_dns = self._control.query_dns(interface)
        current_domains = self._control.query_domains(interface)
        logger.debug(
            f"DNS config for {interface}: DNS(current)={current_dns} "
            f"DNS(desired)={list(state.ordered_servers)} Search(current)={current_domains} "
            f"Search(desired)={state.sorted_domains}"
        )

        changed = False
        if same_set(current_dns, state.dns_servers) and same_set(
            current_domains, state.search_domains
        ):
            logger.debug(f"No changes needed for {interface}; DNS and search domains up-to-date")
        elif self._dry_run:
            logger.info(
                f"[dry-run] Would set {interface}: DNS={list(state.ordered_servers)} "
                f"Search={state.sorted_domains}"
            )
        else:
            self._store.capture(interface, current_dns, current_domains)
            # marked after each call so a later failure still leaves a revertible record
            self._control.set_dns(interface, list(state.ordered_servers))
            self._store.mark_changed(interface)
            self._control.set_domains(interface, state.sorted_domains)
            self._store.mark_changed(interface)
            logger.info(
                f"Configured {interface}: DNS={list(state.ordered_servers)} "
                f"Search={state.sorted_domains}"
            )
            changed = True

        control = self._control
        toggles: List[Tuple[str, Callable[[str], Optional[bool]], Callable[[str, bool], None], bool]]
        toggles = [
            ("DNSOverTLS", control.query_dns_over_tls, control.set_dns_over_tls, state.dns_over_tls),
            ("MulticastDNS", control.query_multicast_dns, control.set_multicast_dns, state.multicast_dns),
        ]
        for label, query, setter, wanted in toggles:
            current = query(interface)
            if current is None or current == wanted:
                continue
            if self._dry_run:
                logger.info(f"[dry-run] Would set {label}={_yes_no(wanted)} on {interface}")
                continue
            self._store.capture(interface, current_dns, current_domains)
            setter(interface, wanted)
            self._store.mark_changed(interface)
            logger.info(f"Set {label}={_yes_no(wanted)} on {interface}")
            changed = True

        return changed

    def _reapply_original(self, record: ManagedInterfaceRecord) -> None:
        interface = record.interface
        if not same_set(self._control.query_dns(interface), record.original_dns):
            self._control.set_dns(interface, list(record.original_dns))
        if not same_set(self._control.query_domains(interface), record.original_domains):
            self._control.set_domains(interface, list(record.original_domains))

    def restore(self, interface: str) -> bool:
        """Revert an interface to its captured state.

        Returns True if the interface is back to its original state (or is
        gone from the host), False if nothing was owed or the revert failed.
        """
        with self._pass_lock:
            record = self._store.get(interface)
            if record is None:
                logger.debug(f"No saved DNS state for {interface}; nothing to restore")
                return False
            if not record.changed:
                logger.debug(f"{interface} was not changed by zeroplex; skipping restore")
                self._store.remove(interface)
                return False
            if self._dry_run:
                logger.info(f"[dry-run] Would restore original DNS on {interface}")
                return False

            logger.info(
                f"Restoring original DNS for {interface}: DNS={list(record.original_dns)} "
                f"Search={list(record.original_domains)}"
            )
            try:
                self._control.revert(interface)
                self._reapply_original(record)
            except CommandError as e:
                if e.is_missing_device:
                    logger.info(f"Interface {interface} is gone; nothing to restore")
                    self._store.remove(interface)
                    return True
                logger.warning(f"Failed to restore DNS for {interface}: {e}")
                return False

            self._store.remove(interface)
            return True

    def restore_all(self) -> List[str]:
        restored = []
        with self._pass_lock:
            for interface in self._store.changed_interfaces():
                if self.restore(interface):
                    restored.append(interface)
        return restored

    def handle_upstream_failure(self) -> List[str]:
        if not self._store.changed_interfaces():
            return []
        logger.warning("Restoring DNS for all managed interfaces after ZeroTier API failure")
        return self.restore_all()

    def shutdown(self) -> List[str]:
        if not self._restore_on_exit:
            return []
        logger.info("Restoring DNS for all managed interfaces before exit")
        return self.restore_all()


# =============================================================================
# Backend Registry
# =============================================================================


def detect_mode(runner: CommandRunner) -> str:
    """Pick a backend from the systemd services that are running."""
    if runner.service_active(NETWORKD_SERVICE):
        return "networkd"
    if runner.service_active(RESOLVED_SERVICE):
        return "resolved"
    raise BackendUnavailableError(
        "Neither systemd-networkd nor systemd-resolved is running; set the mode explicitly"
    )


def create_backend(
    mode: str,
    runner: CommandRunner,
    features: DNSFeatures,
    *,
    dry_run: bool = False,
    network_dir: str = NETWORKD_DIR,
    auto_restart: bool = True,
    reconcile: bool = True,
    restore_on_exit: bool = True,
) -> DNSBackend:
    """Factory function to create the configured backend."""
    if mode == "auto":
        mode = detect_mode(runner)
        logger.info(f"Auto-detected mode: {mode}")

    if mode == "networkd":
        return NetworkdBackend(
            runner,
            features,
            network_dir=network_dir,
            auto_restart=auto_restart,
            reconcile=reconcile,
            dry_run=dry_run,
        )
    if mode == "resolved":
        return ResolvedBackend(
            runner, features, restore_on_exit=restore_on_exit, dry_run=dry_run
        )
    raise ValueError(f"Unsupported mode: '{mode}'. Supported modes: auto, networkd, resolved")
