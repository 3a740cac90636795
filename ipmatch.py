# ipmatch.py
"""
Client IP allow-list matching.

Patterns are either literal addresses (IPv4 or IPv6, compared for equality)
or IPv4 CIDR blocks ("10.0.0.0/8"). IPv6 CIDR blocks are not supported and
never match.
"""
from __future__ import annotations

import ipaddress
from typing import Iterable, Optional

_FULL_MASK = 0xFFFFFFFF


def normalize_ip(value: str) -> str:
    """Canonical text form of an address; unparsable input is only stripped."""
    raw = (value or "").strip()
    try:
        return str(ipaddress.ip_address(raw))
    except ValueError:
        return raw


def ipv4_to_int(value: str) -> Optional[int]:
    try:
        return int(ipaddress.IPv4Address(value.strip()))
    except (ipaddress.AddressValueError, ValueError):
        return None


def in_cidr(client_ip: str, cidr: str) -> bool:
    """True if client_ip is inside the IPv4 block. Bad input never matches."""
    network, sep, prefix_raw = cidr.partition("/")
    if not sep:
        return False

    prefix_raw = prefix_raw.strip()
    if not prefix_raw.isdigit():
        return False
    prefix = int(prefix_raw)
    if prefix > 32:
        return False

    ip_long = ipv4_to_int(client_ip)
    net_long = ipv4_to_int(network)
    if ip_long is None or net_long is None:
        return False

    mask = (_FULL_MASK << (32 - prefix)) & _FULL_MASK
    return (ip_long & mask) == (net_long & mask)


def matches(client_ip: str, patterns: Iterable[str]) -> bool:
    """True if any pattern matches client_ip. An empty list matches nothing."""
    normalized = normalize_ip(client_ip)
    if not normalized:
        return False

    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern.strip():
            continue
        if "/" in pattern:
            if in_cidr(normalized, pattern):
                return True
        elif normalize_ip(pattern) == normalized:
            return True
    return False
