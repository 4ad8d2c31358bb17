"""Unit tests for the systemd-resolved backend.

The backend is driven against an in-memory resolver that behaves like a
resolved link: queries return current state, `revert` drops back to what
the link had before runtime changes.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from fakes import FakeRunner
from zeroplex.backends import (
    DNSFeatures,
    ManagedInterfaceStore,
    ResolvedBackend,
    ResolverControl,
    encode_dns_servers,
    encode_search_domains,
    parse_link_values,
)
from zeroplex.models import BackendUnavailableError, CommandError, NetworkDescriptor

MISSING = 'Failed to resolve interface "{0}": No such device'

# =============================================================================
# Fake Resolver
# =============================================================================


class FakeResolverControl(ResolverControl):
    """In-memory resolver with call tracking."""

    def __init__(self, links: Dict[str, Tuple[List[str], List[str]]]):
        super().__init__(FakeRunner())
        self.defaults = {name: (list(dns), list(domains)) for name, (dns, domains) in links.items()}
        self.dns = {name: list(dns) for name, (dns, _) in links.items()}
        self.domains = {name: list(domains) for name, (_, domains) in links.items()}
        self.dot: Dict[str, bool] = {}
        self.mdns: Dict[str, bool] = {}
        self.missing: Set[str] = set()
        self.broken: Set[str] = set()
        self.set_dns_calls: List[Tuple[str, List[str]]] = []
        self.set_domains_calls: List[Tuple[str, List[str]]] = []
        self.set_dot_calls: List[Tuple[str, bool]] = []
        self.set_mdns_calls: List[Tuple[str, bool]] = []
        self.revert_calls: List[str] = []

    def _check(self, verb: str, interface: str) -> None:
        if interface in self.missing or interface not in self.dns:
            raise CommandError(["resolvectl", verb, interface], 1, MISSING.format(interface))
        if interface in self.broken:
            raise CommandError(["resolvectl", verb, interface], 1, "Connection timed out")

    @property
    def mutations(self) -> int:
        return (
            len(self.set_dns_calls)
            + len(self.set_domains_calls)
            + len(self.set_dot_calls)
            + len(self.set_mdns_calls)
            + len(self.revert_calls)
        )

    def query_dns(self, interface: str) -> List[str]:
        self._check("dns", interface)
        return list(self.dns[interface])

    def query_domains(self, interface: str) -> List[str]:
        self._check("domain", interface)
        return list(self.domains[interface])

    def query_dns_over_tls(self, interface: str) -> Optional[bool]:
        return self.dot.get(interface, False)

    def query_multicast_dns(self, interface: str) -> Optional[bool]:
        return self.mdns.get(interface, False)

    def set_dns(self, interface: str, servers: Sequence[str]) -> None:
        self._check("dns", interface)
        self.set_dns_calls.append((interface, list(servers)))
        self.dns[interface] = list(servers)

    def set_domains(self, interface: str, domains: Sequence[str]) -> None:
        self._check("domain", interface)
        self.set_domains_calls.append((interface, list(domains)))
        self.domains[interface] = list(domains)

    def set_dns_over_tls(self, interface: str, enabled: bool) -> None:
        self.set_dot_calls.append((interface, enabled))
        self.dot[interface] = enabled

    def set_multicast_dns(self, interface: str, enabled: bool) -> None:
        self.set_mdns_calls.append((interface, enabled))
        self.mdns[interface] = enabled

    def revert(self, interface: str) -> None:
        self._check("revert", interface)
        self.revert_calls.append(interface)
        self.dns[interface], self.domains[interface] = (
            list(self.defaults[interface][0]),
            list(self.defaults[interface][1]),
        )
        self.dot.pop(interface, None)
        self.mdns.pop(interface, None)


# =============================================================================
# Test Helpers
# =============================================================================


def zt_network(interface: str = "zt0", dns=("9.9.9.9",), domain: Optional[str] = None) -> NetworkDescriptor:
    return NetworkDescriptor(
        id=f"net-{interface}",
        name=f"net-{interface}",
        interface=interface,
        online=True,
        dns_servers=tuple(dns),
        dns_domain=domain,
    )


def create_test_backend(
    links: Dict[str, Tuple[List[str], List[str]]],
    features: DNSFeatures = DNSFeatures(),
    **kwargs,
) -> Tuple[ResolvedBackend, FakeResolverControl]:
    control = FakeResolverControl(links)
    backend = ResolvedBackend(FakeRunner(), features, control=control, **kwargs)
    return backend, control


# =============================================================================
# Reconciliation
# =============================================================================


class TestApply:
    """Tests for applying desired DNS state to resolved links."""

    def test_capture_apply_and_revert_on_departure(self) -> None:
        """A changed interface is reverted to its original DNS once it leaves."""
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})

        result = backend.apply([zt_network(dns=["9.9.9.9"])])

        record = backend.store.get("zt0")
        assert record is not None
        assert record.original_dns == ("1.1.1.1",)
        assert record.changed is True
        assert control.dns["zt0"] == ["9.9.9.9"]
        assert result.changed == ["zt0"]

        result = backend.apply([])

        assert control.revert_calls == ["zt0"]
        assert control.dns["zt0"] == ["1.1.1.1"]
        assert "zt0" not in backend.store
        assert result.reverted == ["zt0"]

    def test_no_mutation_when_state_already_matches(self) -> None:
        backend, control = create_test_backend(
            {"zt0": (["10.0.0.2", "10.0.0.1"], ["corp.internal"])}
        )

        result = backend.apply([zt_network(dns=["10.0.0.1", "10.0.0.2"], domain="corp.internal")])

        assert control.mutations == 0
        assert len(backend.store) == 0
        assert result.unchanged == ["zt0"]

    def test_second_pass_is_idempotent(self) -> None:
        backend, control = create_test_backend({"zt0": ([], [])})
        backend.apply([zt_network()])
        before = control.mutations

        result = backend.apply([zt_network()])

        assert control.mutations == before
        assert result.unchanged == ["zt0"]

    def test_capture_happens_once(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})
        backend.apply([zt_network(dns=["9.9.9.9"])])
        backend.apply([zt_network(dns=["8.8.8.8"])])

        record = backend.store.get("zt0")
        assert record.original_dns == ("1.1.1.1",)
        assert control.dns["zt0"] == ["8.8.8.8"]

    def test_domains_include_reverse_zones(self) -> None:
        backend, control = create_test_backend(
            {"zt0": ([], [])}, features=DNSFeatures(add_reverse_domains=True)
        )
        network = NetworkDescriptor(
            id="n1",
            interface="zt0",
            dns_servers=("10.1.2.1",),
            dns_domain="corp.internal",
            assigned_addresses=("10.1.2.3/24",),
        )

        backend.apply([network])

        assert control.set_domains_calls == [("zt0", ["corp.internal", "~2.1.10.in-addr.arpa"])]

    def test_toggles_compared_independently(self) -> None:
        features = DNSFeatures(dns_over_tls=True, multicast_dns=False)
        backend, control = create_test_backend({"zt0": (["9.9.9.9"], [])}, features=features)

        result = backend.apply([zt_network()])

        assert control.set_dns_calls == []
        assert control.set_dot_calls == [("zt0", True)]
        assert control.set_mdns_calls == []
        assert backend.store.get("zt0").changed is True
        assert result.changed == ["zt0"]

    def test_failing_interface_does_not_stop_the_pass(self) -> None:
        backend, control = create_test_backend({"zt0": ([], []), "zt1": ([], [])})
        control.broken.add("zt0")

        result = backend.apply([zt_network("zt0"), zt_network("zt1")])

        assert result.failed == ["zt0"]
        assert result.changed == ["zt1"]
        assert control.dns["zt1"] == ["9.9.9.9"]

    def test_partial_apply_is_reverted_on_departure(self) -> None:
        """DNS set before a failing domain update still belongs to zeroplex."""
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})

        def failing_set_domains(interface: str, domains: Sequence[str]) -> None:
            raise CommandError(["resolvectl", "domain", interface], 1, "Connection timed out")

        control.set_domains = failing_set_domains
        result = backend.apply([zt_network(domain="corp.internal")])

        assert result.failed == ["zt0"]
        assert control.dns["zt0"] == ["9.9.9.9"]
        assert backend.store.get("zt0").changed is True

        result = backend.apply([])

        assert result.reverted == ["zt0"]
        assert control.revert_calls == ["zt0"]
        assert control.dns["zt0"] == ["1.1.1.1"]
        assert "zt0" not in backend.store

    def test_network_without_servers_is_skipped(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})

        result = backend.apply([zt_network(dns=())])

        assert control.mutations == 0
        assert result.changed == []

    def test_dry_run_changes_nothing(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])}, dry_run=True)

        backend.apply([zt_network()])

        assert control.mutations == 0
        assert len(backend.store) == 0


# =============================================================================
# Restoration
# =============================================================================


class TestRestore:
    """Tests for reverting interfaces the backend changed."""

    def test_untracked_interface_is_never_reverted(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})

        assert backend.restore("zt0") is False
        assert control.revert_calls == []

    def test_unchanged_record_is_never_reverted(self) -> None:
        store = ManagedInterfaceStore()
        store.capture("zt0", ["1.1.1.1"], [])
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])}, store=store)

        assert backend.restore("zt0") is False
        assert backend.shutdown() == []
        assert control.revert_calls == []

    def test_original_state_reapplied_when_revert_is_not_enough(self) -> None:
        """Runtime-only originals are set again after revert clears the link."""
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], ["home.arpa"])})
        backend.apply([zt_network()])
        control.defaults["zt0"] = ([], [])

        assert backend.restore("zt0") is True

        assert control.dns["zt0"] == ["1.1.1.1"]
        assert control.domains["zt0"] == ["home.arpa"]

    def test_missing_interface_counts_as_restored(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})
        backend.apply([zt_network()])
        control.missing.add("zt0")

        result = backend.apply([])

        assert result.reverted == ["zt0"]
        assert "zt0" not in backend.store

    def test_failed_restore_is_retried_next_pass(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})
        backend.apply([zt_network()])
        control.broken.add("zt0")

        assert backend.apply([]).reverted == []
        assert "zt0" in backend.store

        control.broken.clear()
        assert backend.apply([]).reverted == ["zt0"]

    def test_upstream_failure_restores_changed_interfaces(self) -> None:
        backend, control = create_test_backend(
            {"zt0": (["1.1.1.1"], []), "zt1": (["9.9.9.9"], [])}
        )
        backend.apply([zt_network("zt0"), zt_network("zt1")])

        restored = backend.handle_upstream_failure()

        assert restored == ["zt0"]
        assert control.dns["zt0"] == ["1.1.1.1"]
        assert control.revert_calls == ["zt0"]

    def test_shutdown_restores_when_enabled(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])})
        backend.apply([zt_network()])

        assert backend.shutdown() == ["zt0"]
        assert control.dns["zt0"] == ["1.1.1.1"]

    def test_shutdown_leaves_state_when_disabled(self) -> None:
        backend, control = create_test_backend({"zt0": (["1.1.1.1"], [])}, restore_on_exit=False)
        backend.apply([zt_network()])

        assert backend.shutdown() == []
        assert control.revert_calls == []


# =============================================================================
# Managed Interface Store
# =============================================================================


class TestManagedInterfaceStore:
    """Tests for the record store."""

    def test_capture_is_idempotent(self) -> None:
        store = ManagedInterfaceStore()
        assert store.capture("zt0", ["1.1.1.1"], ["a"]) is True
        assert store.capture("zt0", ["2.2.2.2"], ["b"]) is False
        assert store.get("zt0").original_dns == ("1.1.1.1",)

    def test_changed_interfaces(self) -> None:
        store = ManagedInterfaceStore()
        store.capture("zt0", [], [])
        store.capture("zt1", [], [])
        store.mark_changed("zt1")
        assert store.interfaces() == ["zt0", "zt1"]
        assert store.changed_interfaces() == ["zt1"]

    def test_mark_changed_requires_capture(self) -> None:
        with pytest.raises(KeyError):
            ManagedInterfaceStore().mark_changed("zt0")

    def test_get_returns_a_copy(self) -> None:
        store = ManagedInterfaceStore()
        store.capture("zt0", [], [])
        store.get("zt0").changed = True
        assert store.changed_interfaces() == []


# =============================================================================
# Resolver Control
# =============================================================================


class TestResolverControl:
    """Tests for resolvectl parsing and the D-Bus/resolvectl mutation paths."""

    def create_control(self, tmp_path: Path, bus: bool = True, failures=None):
        runner = FakeRunner(commands=["busctl", "resolvectl"], links={"zt0": 7}, failures=failures)
        control = ResolverControl(runner)
        socket_path = tmp_path / "system_bus_socket"
        if bus:
            socket_path.write_text("")
        control.SYSTEM_BUS_SOCKET = str(socket_path)
        return control, runner

    def test_parse_link_values(self) -> None:
        output = "Global: 1.1.1.1\nLink 3 (zt0): 10.0.0.1 10.0.0.2\n"
        assert parse_link_values(output) == ["10.0.0.1", "10.0.0.2"]

    def test_parse_link_values_empty(self) -> None:
        assert parse_link_values("Link 3 (zt0):\n") == []
        assert parse_link_values("") == []

    def test_parse_ipv6_values(self) -> None:
        assert parse_link_values("Link 4 (zt1): fd00::1 10.0.0.1") == ["fd00::1", "10.0.0.1"]

    def test_encode_dns_servers(self) -> None:
        encoded = encode_dns_servers(["10.0.0.1", "fd00::1", "nonsense"])
        assert encoded[0] == (2, bytes([10, 0, 0, 1]))
        assert encoded[1][0] == 10
        assert len(encoded[1][1]) == 16
        assert len(encoded) == 2

    def test_encode_search_domains(self) -> None:
        assert encode_search_domains(["corp.internal", "~2.1.10.in-addr.arpa"]) == [
            ("corp.internal", False),
            ("2.1.10.in-addr.arpa", True),
        ]

    def test_set_dns_over_dbus(self, tmp_path: Path) -> None:
        control, runner = self.create_control(tmp_path)

        control.set_dns("zt0", ["10.0.0.1"])

        assert runner.calls == [
            [
                "busctl",
                "call",
                "org.freedesktop.resolve1",
                "/org/freedesktop/resolve1",
                "org.freedesktop.resolve1.Manager",
                "SetLinkDNS",
                "ia(iay)",
                "7",
                "1",
                "2",
                "4",
                "10",
                "0",
                "0",
                "1",
            ]
        ]

    def test_set_domains_over_dbus(self, tmp_path: Path) -> None:
        control, runner = self.create_control(tmp_path)

        control.set_domains("zt0", ["corp.internal", "~2.1.10.in-addr.arpa"])

        assert runner.calls[0][5:] == [
            "SetLinkDomains",
            "ia(sb)",
            "7",
            "2",
            "corp.internal",
            "false",
            "2.1.10.in-addr.arpa",
            "true",
        ]

    def test_falls_back_to_resolvectl_without_bus(self, tmp_path: Path) -> None:
        control, runner = self.create_control(tmp_path, bus=False)

        control.set_dns("zt0", ["10.0.0.1", "10.0.0.2"])
        control.set_dns_over_tls("zt0", True)

        assert runner.calls == [
            ["resolvectl", "dns", "zt0", "10.0.0.1", "10.0.0.2"],
            ["resolvectl", "dnsovertls", "zt0", "yes"],
        ]

    def test_falls_back_when_bus_call_fails(self, tmp_path: Path) -> None:
        control, runner = self.create_control(
            tmp_path, failures={("busctl",): "Call failed: Access denied"}
        )

        control.set_multicast_dns("zt0", False)

        assert runner.calls[-1] == ["resolvectl", "mdns", "zt0", "no"]

    def test_missing_device_on_bus_is_not_retried(self, tmp_path: Path) -> None:
        control, runner = self.create_control(
            tmp_path, failures={("busctl",): "Call failed: No such device"}
        )

        with pytest.raises(CommandError) as exc_info:
            control.revert("zt0")

        assert exc_info.value.is_missing_device
        assert len(runner.calls) == 1

    def test_unknown_link_index_uses_resolvectl(self, tmp_path: Path) -> None:
        control, runner = self.create_control(tmp_path)

        control.revert("zt9")

        assert runner.calls == [["resolvectl", "revert", "zt9"]]

    def test_clearing_dns_passes_empty_argument(self, tmp_path: Path) -> None:
        control, runner = self.create_control(tmp_path, bus=False)

        control.set_domains("zt0", [])

        assert runner.calls == [["resolvectl", "domain", "zt0", ""]]

    def test_query_flags(self, tmp_path: Path) -> None:
        control, runner = self.create_control(tmp_path)
        runner.outputs[("resolvectl", "dnsovertls", "zt0")] = "Link 7 (zt0): yes\n"
        runner.outputs[("resolvectl", "mdns", "zt0")] = "Link 7 (zt0): no\n"

        assert control.query_dns_over_tls("zt0") is True
        assert control.query_multicast_dns("zt0") is False

    def test_query_flag_failure_returns_none(self, tmp_path: Path) -> None:
        control, _ = self.create_control(tmp_path, failures={("resolvectl", "mdns"): "boom"})
        assert control.query_multicast_dns("zt0") is None


class TestAvailability:
    """Tests for backend start-up checks."""

    def test_requires_running_service(self) -> None:
        backend = ResolvedBackend(FakeRunner(commands=["resolvectl"]), DNSFeatures())
        with pytest.raises(BackendUnavailableError):
            backend.check_available()

    def test_requires_resolvectl(self) -> None:
        backend = ResolvedBackend(FakeRunner(services=["systemd-resolved.service"]), DNSFeatures())
        with pytest.raises(BackendUnavailableError):
            backend.check_available()

    def test_available(self) -> None:
        runner = FakeRunner(services=["systemd-resolved.service"], commands=["resolvectl"])
        ResolvedBackend(runner, DNSFeatures()).check_available()
