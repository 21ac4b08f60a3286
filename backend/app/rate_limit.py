"""Rate limiting for the AgriMarket API.

Calls are counted per organization when they carry a valid bearer token,
so several farms behind one NAT do not share a budget. Anonymous or
unverifiable calls are counted per client address, and X-Forwarded-For is
read only when the connection comes from ``Settings.trusted_proxy_cidrs``.
"""

import ipaddress
from functools import lru_cache

from fastapi import HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from .auth import decode_token
from .config import get_settings
from .logging_config import get_logger

logger = get_logger("rate_limit")

ProxyNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache
def trusted_proxy_networks(cidrs: tuple[str, ...]) -> tuple[ProxyNetwork, ...]:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return tuple(networks)


def client_address(request: Request) -> str:
    """Caller address, looking through the first hop only if it is a trusted proxy."""
    peer = get_remote_address(request)
    try:
        peer_ip = ipaddress.ip_address(peer)
    except ValueError:
        return peer

    networks = trusted_proxy_networks(tuple(get_settings().trusted_proxy_cidrs))
    if not any(peer_ip in network for network in networks):
        return peer
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    return forwarded or peer


def rate_limit_key(request: Request) -> str:
    """Bucket for a request: ``org:<id>`` when authenticated, else ``ip:<address>``."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            org_id = decode_token(token.strip(), get_settings()).get("org_id")
        except HTTPException:
            # The route's auth dependency reports the bad token
            org_id = None
        if org_id:
            return f"org:{org_id}"
    return f"ip:{client_address(request)}"


limiter = Limiter(key_func=rate_limit_key)
