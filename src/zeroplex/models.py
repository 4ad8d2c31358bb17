"""Shared data types and errors for zeroplex."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

# =============================================================================
# Errors
# =============================================================================


class ZeroplexError(Exception):
    """Base class for all zeroplex errors."""


class ConfigError(ZeroplexError):
    """Invalid configuration detected at startup."""


class BackendUnavailableError(ZeroplexError):
    """The host DNS backend cannot be used on this system."""


class DirectoryServiceError(ZeroplexError):
    """The network list could not be obtained from the ZeroTier service."""


class ControlPlaneUnavailable(ZeroplexError):
    """The resolver control plane could not be reached."""


class CommandError(ZeroplexError):
    """A host command failed or could not be executed."""

    MISSING_DEVICE_MARKERS = ("No such device", "not found", "Unknown interface")

    def __init__(self, args: List[str], returncode: int, output: str = ""):
        self.args_list = list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"command failed ({returncode}): {' '.join(self.args_list)}: {output.strip()}"
        )

    @property
    def is_missing_device(self) -> bool:
        return any(marker in self.output for marker in self.MISSING_DEVICE_MARKERS)


# =============================================================================
# Network state
# =============================================================================


@dataclass(frozen=True)
class NetworkDescriptor:
    """One joined ZeroTier network, as reported by the local service API."""

    id: str
    name: str = ""
    interface: str = ""
    online: bool = False
    dns_servers: Tuple[str, ...] = ()
    dns_domain: Optional[str] = None
    assigned_addresses: Tuple[str, ...] = ()
    routes: Tuple[str, ...] = ()

    @property
    def assigned(self) -> bool:
        return len(self.assigned_addresses) > 0

    @property
    def display_name(self) -> str:
        return self.name or self.id or "unknown"


@dataclass(frozen=True)
class DesiredInterfaceState:
    """DNS state zeroplex wants an interface to have after a pass."""

    interface: str
    network_name: str
    dns_servers: FrozenSet[str]
    search_domains: FrozenSet[str]
    dns_over_tls: bool = False
    multicast_dns: bool = False
    # Servers in the order the network advertised them, used for rendering.
    ordered_servers: Tuple[str, ...] = ()

    @property
    def sorted_domains(self) -> List[str]:
        return sorted(self.search_domains)


@dataclass
class ManagedInterfaceRecord:
    """Pre-change resolver state for an interface zeroplex has touched."""

    interface: str
    original_dns: Tuple[str, ...]
    original_domains: Tuple[str, ...]
    changed: bool = False


# =============================================================================
# Interface events
# =============================================================================


class InterfaceEventKind(Enum):
    ADDED = "added"
    REMOVED = "removed"
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class InterfaceEvent:
    name: str
    kind: InterfaceEventKind
    index: int = 0


# =============================================================================
# Pass results
# =============================================================================


@dataclass
class ReconcileResult:
    """Summary of what one backend pass did."""

    backend: str
    written: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    reverted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    reloaded: bool = False

    def summary(self) -> str:
        parts = []
        for label in ("written", "deleted", "stale", "changed", "reverted", "failed"):
            items = getattr(self, label)
            if items:
                parts.append(f"{len(items)} {label}")
        if self.reloaded:
            parts.append("reloaded")
        return ", ".join(parts) if parts else "no changes"
