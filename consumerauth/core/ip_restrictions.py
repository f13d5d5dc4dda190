"""Source-IP allow-listing declared in a consumer's restriction data."""

from __future__ import annotations

import ipaddress
import logging

from consumerauth.core.exceptions import IpRestrictedError

logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def allowed_ranges(restrictions: dict | str | None) -> list[str]:
    """Return the configured IP ranges; an empty list means unrestricted."""
    if not restrictions:
        return []
    if isinstance(restrictions, str):
        # A bare string is a single range
        return [restrictions.strip()] if restrictions.strip() else []
    ranges = restrictions.get("IPAddresses")
    if ranges is None:
        return []
    if isinstance(ranges, str):
        return [ranges]
    return [r for r in ranges if r]


def ip_in_range(ip: IPAddress, entry: str) -> bool:
    """Match an address against CIDR, a single address or an ``a - b`` span."""
    entry = entry.strip()
    try:
        if "-" in entry and "/" not in entry:
            low_raw, high_raw = (part.strip() for part in entry.split("-", 1))
            low, high = ipaddress.ip_address(low_raw), ipaddress.ip_address(high_raw)
            return low.version == ip.version and low <= ip <= high
        network = ipaddress.ip_network(entry, strict=False)
    except ValueError:
        logger.warning("Ignoring malformed IP range in consumer restrictions: %r", entry)
        return False
    return ip.version == network.version and ip in network


def is_allowed(restrictions: dict | str | None, source_ip: str) -> bool:
    ranges = allowed_ranges(restrictions)
    if not ranges:
        return True
    try:
        ip = ipaddress.ip_address(source_ip)
    except ValueError:
        return False
    return any(ip_in_range(ip, entry) for entry in ranges)


def check_source_ip(restrictions: dict | str | None, source_ip: str, consumer_key: str = "") -> None:
    if not is_allowed(restrictions, source_ip):
        logger.info("Rejected request for consumer %s from %s (IP restriction)", consumer_key, source_ip)
        raise IpRestrictedError()
