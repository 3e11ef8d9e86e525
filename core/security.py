"""
Client identification for rate limiting.
========================================

Resolves the caller's IP, honouring forwarded headers only when the direct
peer is a configured trusted proxy (TRUSTED_PROXIES, comma separated CIDRs).
"""

from __future__ import annotations

import ipaddress
import logging
from typing import List, Optional

from fastapi import Request

from config import config

logger = logging.getLogger(__name__)

DEFAULT_TRUSTED_PROXY_NETWORKS: List[ipaddress.IPv4Network | ipaddress.IPv6Network] = [
    ipaddress.ip_network("127.0.0.1/32"),
    ipaddress.ip_network("::1/128"),
]

# Headers to consult when the request is from a trusted proxy.
FORWARDED_SINGLE_IP_HEADERS: tuple[str, ...] = (
    "CF-Connecting-IP",
    "Fly-Client-IP",
    "X-Real-IP",
)
FORWARDED_CHAIN_HEADER = "X-Forwarded-For"


def _load_trusted_proxy_networks(entries: List[str]) -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks: List[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Invalid trusted proxy CIDR ignored: %s", entry)
    return networks or list(DEFAULT_TRUSTED_PROXY_NETWORKS)


TRUSTED_PROXY_NETWORKS = _load_trusted_proxy_networks(config.TRUSTED_PROXIES)


def is_trusted_proxy(client_ip: Optional[str]) -> bool:
    """Return True when the request source is a trusted proxy."""
    if not client_ip:
        return False
    try:
        ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    return any(ip in network for network in TRUSTED_PROXY_NETWORKS)


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _parse_forwarded_for(value: str) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def get_client_ip(request: Request) -> Optional[str]:
    """
    Extract the client IP from a request.

    Forwarded headers are only trusted when the direct peer is a trusted
    proxy; the right-most untrusted hop of X-Forwarded-For wins.
    """
    client_ip = request.client.host if request.client else None
    if not client_ip:
        return None

    if not is_trusted_proxy(client_ip):
        return client_ip

    for header in FORWARDED_SINGLE_IP_HEADERS:
        forwarded = request.headers.get(header)
        if forwarded and _is_valid_ip(forwarded.strip()):
            return forwarded.strip()

    chain = _parse_forwarded_for(request.headers.get(FORWARDED_CHAIN_HEADER, ""))
    if chain:
        chain.append(client_ip)
        while chain and is_trusted_proxy(chain[-1]):
            chain.pop()
        for ip in reversed(chain):
            if _is_valid_ip(ip):
                return ip

    return client_ip
