"""Reverse-lookup search domains for assigned ZeroTier addresses."""

from __future__ import annotations

import ipaddress
import logging
import math
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


def _ipv4_reverse_domain(address: ipaddress.IPv4Address, prefix_len: int) -> str:
    count = math.ceil(prefix_len / 8)
    octets = list(address.packed[:count])
    labels = [str(o) for o in reversed(octets)]
    return ".".join(labels + ["in-addr.arpa"])


def _ipv6_reverse_domain(address: ipaddress.IPv6Address, prefix_len: int) -> str:
    nibbles: List[int] = []
    for byte in address.packed:
        nibbles.append((byte >> 4) & 0xF)
        nibbles.append(byte & 0xF)
    count = math.ceil(prefix_len / 4)
    labels = [format(n, "x") for n in reversed(nibbles[:count])]
    return ".".join(labels + ["ip6.arpa"])


def reverse_domain(cidr: str) -> str:
    """Return the routing-only reverse domain for one CIDR.

    Raises ValueError if the CIDR cannot be parsed.
    """
    iface = ipaddress.ip_interface(cidr.strip())
    prefix_len = iface.network.prefixlen
    if iface.version == 4:
        domain = _ipv4_reverse_domain(iface.ip, prefix_len)
    else:
        domain = _ipv6_reverse_domain(iface.ip, prefix_len)
    return f"~{domain}"


def reverse_domains(assigned: Optional[Iterable[str]]) -> List[str]:
    """Compute reverse-lookup search domains for assigned addresses.

    Args:
        assigned: CIDR strings such as "10.1.2.3/24" or "fd00::1/88"

    Returns:
        One "~"-prefixed domain per parseable CIDR, in input order. Malformed
        entries are logged and skipped.
    """
    domains: List[str] = []
    for cidr in assigned or []:
        try:
            domains.append(reverse_domain(cidr))
        except ValueError as e:
            logger.warning(f"Could not parse CIDR {cidr!r}: {e}")
    return domains
