"""One reconciliation pass: fetch, filter, validate, apply."""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from zeroplex.backends import DNSBackend
from zeroplex.directory import NetworkDirectory, describe_network
from zeroplex.filters import FilterRule, filter_networks
from zeroplex.models import DirectoryServiceError, NetworkDescriptor, ReconcileResult

logger = logging.getLogger(__name__)


def validate_networks(networks: Iterable[NetworkDescriptor]) -> List[NetworkDescriptor]:
    """Drop networks that cannot be mapped to an interface."""
    valid: List[NetworkDescriptor] = []
    for network in networks:
        if not network.id:
            logger.warning(f"Skipping network without id: {describe_network(network)}")
            continue
        if not network.interface:
            logger.warning(f"Skipping network without interface: {describe_network(network)}")
            continue
        valid.append(network)
    return valid


class Reconciler:
    """Pulls networks from the directory and hands them to the backend."""

    def __init__(
        self,
        directory: NetworkDirectory,
        backend: DNSBackend,
        rules: Sequence[FilterRule] = (),
    ):
        self.directory = directory
        self.backend = backend
        self.rules = list(rules)

    def run(self) -> ReconcileResult:
        """Run one pass.

        Raises:
            DirectoryServiceError: when the network list cannot be fetched.
                Interfaces the backend changed are restored first.
        """
        try:
            networks = self.directory.get_networks()
        except DirectoryServiceError as e:
            logger.error(f"Could not fetch networks: {e}")
            restored = self.backend.handle_upstream_failure()
            if restored:
                logger.info(f"Restored {len(restored)} interface(s): {', '.join(restored)}")
            raise

        selected = filter_networks(networks, self.rules)
        valid = validate_networks(selected)
        logger.debug(f"{len(valid)} of {len(networks)} networks selected for DNS configuration")

        result = self.backend.apply(valid)
        logger.info(f"[{self.backend.name}] Reconciliation complete: {result.summary()}")
        return result

    def network_domains(self) -> List[str]:
        """DNS domains of the networks a pass would configure."""
        networks = validate_networks(filter_networks(self.directory.get_networks(), self.rules))
        return sorted({n.dns_domain for n in networks if n.dns_domain})

    def shutdown(self) -> List[str]:
        restored = self.backend.shutdown()
        if restored:
            logger.info(f"Restored {len(restored)} interface(s) on exit: {', '.join(restored)}")
        return restored
