"""IPv4 address helpers."""

import ipaddress
from typing import Any, Optional

_LOCAL_NETS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
]


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except (ipaddress.AddressValueError, ValueError):
        return False
    return True


def ip_to_int(ip: str) -> int:
    return int(ipaddress.IPv4Address(ip))


def is_same_subnet(ip1: str, ip2: str, netmask: str) -> bool:
    mask = ip_to_int(netmask)
    return (ip_to_int(ip1) & mask) == (ip_to_int(ip2) & mask)


def is_local_ip(ip: str) -> bool:
    """Loopback, RFC 1918 private or link-local IPv4 address."""
    if not is_ipv4(ip):
        return False
    addr = ipaddress.IPv4Address(ip)
    return any(addr in net for net in _LOCAL_NETS)


def validate_port(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and value != port:
        return None
    if 1 <= port <= 65535:
        return port
    return None
