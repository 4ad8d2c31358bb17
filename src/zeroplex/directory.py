"""ZeroTier local service API client."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from zeroplex.models import DirectoryServiceError, NetworkDescriptor

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-ZT1-Auth"


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, str) and v.strip()]


def parse_network(raw: Dict[str, Any]) -> NetworkDescriptor:
    """Map one entry of the /networks response onto a NetworkDescriptor."""
    dns = raw.get("dns") if isinstance(raw.get("dns"), dict) else {}
    domain = dns.get("domain")
    routes = raw.get("routes") if isinstance(raw.get("routes"), list) else []
    return NetworkDescriptor(
        id=str(raw.get("id") or ""),
        name=str(raw.get("name") or ""),
        interface=str(raw.get("portDeviceName") or ""),
        online=raw.get("status") == "OK",
        dns_servers=tuple(_str_list(dns.get("servers"))),
        dns_domain=domain.strip() if isinstance(domain, str) and domain.strip() else None,
        assigned_addresses=tuple(_str_list(raw.get("assignedAddresses"))),
        routes=tuple(
            str(r["target"]) for r in routes if isinstance(r, dict) and r.get("target")
        ),
    )


class NetworkDirectory(ABC):
    """Abstract source of joined networks."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def get_networks(self) -> List[NetworkDescriptor]:
        """Return every joined network or raise DirectoryServiceError."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the directory service."""
        pass


class ZeroTierClient(NetworkDirectory):
    """Reads joined networks from the local zerotier-one service."""

    def __init__(
        self,
        host: str,
        port: int,
        token_file: str = "",
        token: str = "",
        timeout_seconds: float = 10.0,
    ):
        self._base = f"{host.rstrip('/')}:{port}"
        self._token_file = token_file
        self._token = token.strip()
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "ZeroTier"

    @property
    def url(self) -> str:
        return self._base

    def _load_token(self) -> str:
        if self._token:
            return self._token
        try:
            token = Path(self._token_file).read_text("utf-8").strip()
        except OSError as e:
            raise DirectoryServiceError(f"Failed to read token file {self._token_file}: {e}") from e
        if not token:
            raise DirectoryServiceError(f"Token file {self._token_file} is empty")
        return token

    def get_networks(self) -> List[NetworkDescriptor]:
        """Fetch all joined networks.

        Raises:
            DirectoryServiceError: on any transport, status or parse failure.
                A partial list is never returned.
        """
        headers = {AUTH_HEADER: self._load_token()}
        try:
            response = self._session.get(
                f"{self._base}/networks", headers=headers, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise DirectoryServiceError(f"Failed to get networks from {self.name}: {e}") from e

        if not isinstance(data, list):
            raise DirectoryServiceError(
                f"Unexpected response format from {self.name}: "
                f"expected list, got {type(data).__name__}"
            )

        networks: List[NetworkDescriptor] = []
        for item in data:
            if not isinstance(item, dict):
                raise DirectoryServiceError(f"Malformed network entry: {item!r}")
            networks.append(parse_network(item))

        logger.debug(f"Retrieved {len(networks)} networks from {self.name}")
        for network in networks:
            logger.debug(
                f"Network {network.id}: name={network.name!r} interface={network.interface!r} "
                f"online={network.online} dns={list(network.dns_servers)} "
                f"domain={network.dns_domain!r} assigned={list(network.assigned_addresses)}"
            )
        return networks

    def test_connection(self) -> bool:
        try:
            self.get_networks()
            logger.info(f"{self.name} connection successful ({self._base})")
            return True
        except DirectoryServiceError as e:
            logger.warning(f"Failed to connect to {self.name}: {e}")
            return False


def describe_network(network: Optional[NetworkDescriptor]) -> str:
    if network is None:
        return "unknown"
    return f"{network.display_name} ({network.interface or 'no interface'})"
