"""Peer address parsing and public-IP filtering."""

import ipaddress
import logging

logger = logging.getLogger(__name__)

DEFAULT_GOSSIP_PORT = 9001


def parse_address(
    raw: object, default_port: int = DEFAULT_GOSSIP_PORT
) -> tuple[str, int] | None:
    """Split a gossip address into ``(host, port)``.

    Accepts ``host``, ``host:port``, ``[v6]:port`` and bare IPv6 literals.
    A missing port falls back to *default_port*.

    Args:
        raw: Address as reported by gossip.
        default_port: Port used when *raw* carries none.

    Returns:
        ``(host, port)``, or ``None`` if *raw* is empty or unparseable.
    """
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value or any(ch.isspace() for ch in value):
        return None

    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or not host:
            return None
        port_text = rest[1:] if rest.startswith(":") else ""
        if rest and not rest.startswith(":"):
            return None
    elif value.count(":") > 1:
        # Bare IPv6 literal without brackets has no port.
        host, port_text = value, ""
    else:
        host, _, port_text = value.partition(":")

    if not host:
        return None
    if not port_text:
        return host, default_port
    if not port_text.isdigit():
        return None
    port = int(port_text)
    if not 0 < port < 65536:
        return None
    return host, port


def format_address(host: str, port: int) -> str:
    """Inverse of :func:`parse_address`."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def normalize_address(
    raw: object, default_port: int = DEFAULT_GOSSIP_PORT
) -> str | None:
    """Return *raw* in canonical ``host:port`` form, or ``None``."""
    parsed = parse_address(raw, default_port)
    if parsed is None:
        return None
    return format_address(*parsed)


def host_of(address: str) -> str | None:
    """Return the host part of a ``host:port`` address."""
    parsed = parse_address(address)
    return parsed[0] if parsed else None


def is_public_ip(value: object) -> bool:
    """Whether *value* is a globally routable IP address literal.

    Private, loopback, link-local, multicast, reserved and unspecified
    addresses are rejected, as is anything that is not an IP literal.
    """
    if not isinstance(value, str):
        return False
    try:
        ip = ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return ip.is_global and not ip.is_multicast
