#!/usr/bin/env python3
"""
Private/internal address classification.

Pure helpers used by the URL validator to decide whether an address points
inside the host's own network. No I/O happens here.
"""

import ipaddress
import re
import socket
from typing import Optional

PRIVATE_IPV4_NETWORKS = (
    ipaddress.ip_network("127.0.0.0/8"),     # loopback
    ipaddress.ip_network("10.0.0.0/8"),      # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),   # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),  # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),  # link-local, cloud metadata
    ipaddress.ip_network("0.0.0.0/8"),       # current network
)

PRIVATE_IPV6_NETWORKS = (
    ipaddress.ip_network("::1/128"),    # loopback
    ipaddress.ip_network("fc00::/7"),   # unique local
    ipaddress.ip_network("fe80::/10"),  # link-local
)

LOOPBACK_NETWORKS = (
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
)

# Hostnames made only of digits, hex prefixes and dots may be legacy IPv4
# spellings (2130706433, 0x7f.1, 127.1) that the system resolver accepts.
_LEGACY_IPV4_RE = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$", re.IGNORECASE)


def _to_address(ip: str):
    try:
        address = ipaddress.ip_address(ip.strip().strip("[]"))
    except (ValueError, AttributeError):
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_private_ip(ip: str) -> bool:
    """Return True if ``ip`` is loopback, RFC1918, link-local or current-network.

    Unrecognized input is treated as public (False); callers decide what to
    do with ambiguous hosts.
    """
    address = _to_address(ip)
    if address is None:
        return False
    networks = PRIVATE_IPV4_NETWORKS if address.version == 4 else PRIVATE_IPV6_NETWORKS
    return any(address in network for network in networks)


def is_loopback_ip(ip: str) -> bool:
    """Return True for 127.0.0.0/8 and ::1 (including IPv4-mapped forms)."""
    address = _to_address(ip)
    if address is None:
        return False
    return any(address.version == n.version and address in n for n in LOOPBACK_NETWORKS)


def parse_ip_literal(host: str) -> Optional[str]:
    """Return the canonical address if ``host`` is an IP literal, else None."""
    if not host:
        return None
    address = _to_address(host)
    if address is not None:
        return str(address)
    if _LEGACY_IPV4_RE.match(host):
        try:
            return socket.inet_ntoa(socket.inet_aton(host))
        except OSError:
            return None
    return None
