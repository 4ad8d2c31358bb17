"""Host command execution and link lookups."""

from __future__ import annotations

import logging
import shutil
import subprocess
from typing import Dict, List, Optional

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError

from zeroplex.models import CommandError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_SECONDS = 30


class CommandRunner:
    """Runs host commands and returns their stdout.

    Backends receive a runner rather than calling subprocess directly so the
    host can be replaced in tests.
    """

    def run(self, args: List[str]) -> str:
        logger.debug(f"Executing: {' '.join(args)}")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise CommandError(args, 127, str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(args, -1, f"timed out after {e.timeout}s") from e

        if result.returncode != 0:
            raise CommandError(args, result.returncode, (result.stderr or "") + (result.stdout or ""))
        return result.stdout

    def exists(self, command: str) -> bool:
        return shutil.which(command) is not None

    def service_exists(self, service: str) -> bool:
        try:
            self.run(["systemctl", "status", service])
            return True
        except CommandError as e:
            # 3 means "loaded but not running"; the unit still exists
            return e.returncode == 3

    def service_active(self, service: str) -> bool:
        try:
            return self.run(["systemctl", "is-active", service]).strip() == "active"
        except CommandError:
            return False

    def link_index(self, name: str) -> Optional[int]:
        """Return the kernel index of a link, or None if it does not exist."""
        try:
            with IPRoute() as ipr:
                indexes = ipr.link_lookup(ifname=name)
        except NetlinkError as e:
            logger.debug(f"Link lookup for {name} failed: {e}")
            return None
        return indexes[0] if indexes else None


def list_links() -> Dict[str, int]:
    """Snapshot of host links as {name: index}."""
    links: Dict[str, int] = {}
    with IPRoute() as ipr:
        for link in ipr.get_links():
            name = link.get_attr("IFLA_IFNAME")
            if name:
                links[name] = link["index"]
    return links
