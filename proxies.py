# proxies.py
from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Literal, Optional

from pipeline import RequestContext

logger = logging.getLogger(__name__)

UNKNOWN_IP = "0.0.0.0"

TrustMode = Literal["always", "proxy", "never"]


def _valid_ip(value: str) -> Optional[str]:
    value = (value or "").strip()
    if not value:
        return None
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return None
    return value


class ProxyPolicy:
    """
    Decides when X-Forwarded-For / X-Real-IP / X-Forwarded-Proto are believed.

    - always: trust them from anyone (historical behaviour, spoofable)
    - proxy:  only when the immediate peer is inside trusted_cidrs
    - never:  ignore them, use the peer address
    """

    def __init__(self, trust: TrustMode = "always", trusted_cidrs: Iterable[str] = ("127.0.0.1/32", "::1/128")):
        if trust not in ("always", "proxy", "never"):
            raise ValueError(f"invalid trust mode: {trust!r}")
        self.trust = trust
        self._networks = []
        for c in trusted_cidrs:
            try:
                self._networks.append(ipaddress.ip_network(c.strip(), strict=False))
            except ValueError:
                logger.warning(f"Ignoring invalid trusted proxy CIDR: {c!r}")

    def is_trusted_proxy(self, peer: str) -> bool:
        try:
            ip = ipaddress.ip_address((peer or "").strip())
        except ValueError:
            return False
        return any(ip in net for net in self._networks)

    def honours_forwarded(self, ctx: RequestContext) -> bool:
        if self.trust == "always":
            return True
        if self.trust == "never":
            return False
        return self.is_trusted_proxy(ctx.peer)

    def client_ip(self, ctx: RequestContext) -> str:
        # Precedence: X-Forwarded-For (leftmost) -> X-Real-IP -> peer
        if self.honours_forwarded(ctx):
            xff = ctx.header("x-forwarded-for") or ""
            if xff:
                ip = _valid_ip(xff.split(",")[0])
                if ip:
                    return ip
            ip = _valid_ip(ctx.header("x-real-ip") or "")
            if ip:
                return ip
        return _valid_ip(ctx.peer) or UNKNOWN_IP

    def is_https(self, ctx: RequestContext) -> bool:
        if self.trust != "never" and self.is_trusted_proxy(ctx.peer):
            xf_proto = (ctx.header("x-forwarded-proto") or "").split(",")[0].strip().lower()
            if xf_proto in {"https", "http"}:
                return xf_proto == "https"
        return (ctx.scheme or "").lower() == "https"
