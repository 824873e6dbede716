"""Local address lookup for the link interface."""

import ipaddress
import logging
import socket

logger = logging.getLogger(__name__)


def local_ipv4_addresses(probe: str | None = None) -> list[str]:
    """
    Return the IPv4 addresses of this host, best effort.

    Uses the addresses the hostname resolves to, plus the source address
    the OS would pick to reach `probe` (no packet is sent).
    """
    ips: list[str] = []
    try:
        _, _, host_ips = socket.gethostbyname_ex(socket.gethostname())
        ips.extend(host_ips)
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")

    if probe:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect((probe, 9))
                ips.append(s.getsockname()[0])
        except OSError as e:
            logger.debug(f"Route lookup towards {probe} failed: {e}")

    # Keep first-seen order, drop duplicates
    return list(dict.fromkeys(ips))


def find_link_address(subnet: str, candidates: list[str] | None = None) -> str | None:
    """First non-loopback IPv4 address inside `subnet`, or None."""
    network = ipaddress.IPv4Network(subnet, strict=False)
    if candidates is None:
        candidates = local_ipv4_addresses(probe=str(network.network_address + 1))

    for ip in candidates:
        try:
            addr = ipaddress.IPv4Address(ip)
        except ValueError:
            continue
        if not addr.is_loopback and addr in network:
            return str(addr)
    return None
