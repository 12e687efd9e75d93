"""Bonding link list: the source addresses the link sender spreads packets over."""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from .interfaces import InterfaceMonitor
from .jsoncache import write_text_file
from .netutil import is_ipv4, is_local_ip, is_same_subnet

LOGGER = logging.getLogger("uplink_router.linklist")


class LinkListBuilder:
    def __init__(
        self,
        interfaces: InterfaceMonitor,
        path: Path,
        reload: Optional[Callable[[], None]] = None,
    ):
        self.interfaces = interfaces
        self.path = Path(path)
        self.reload = reload

    def build(self, remote_addr: Optional[str] = None) -> List[str]:
        eligible = self.interfaces.eligible()
        # Bonding links towards a LAN receiver only helps with the one on its subnet
        if remote_addr and is_ipv4(remote_addr) and is_local_ip(remote_addr):
            return [
                i.ip
                for i in eligible
                if i.netmask and is_same_subnet(i.ip, remote_addr, i.netmask)
            ]
        return [i.ip for i in eligible]

    def write(self, ips: List[str]) -> bool:
        return write_text_file(self.path, "".join(f"{ip}\n" for ip in ips))

    def rebuild(self, remote_addr: Optional[str] = None) -> List[str]:
        ips = self.build(remote_addr)
        if not ips:
            LOGGER.warning("No usable network connections for %s", remote_addr or "the relay")
            return []
        if self.write(ips) and self.reload is not None:
            self.reload()
        LOGGER.debug("Link list: %s", ", ".join(ips))
        return ips
