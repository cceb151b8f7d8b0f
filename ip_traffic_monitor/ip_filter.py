"""
Public address classification for remote IPs seen by the capture backends
"""
from __future__ import annotations
import ipaddress

_EXCLUDED_V4 = tuple(
    ipaddress.IPv4Network(net)
    for net in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "224.0.0.0/4",     # multicast
        "240.0.0.0/4",     # reserved, includes 255.255.255.255
    )
)

_LINK_LOCAL_V6 = ipaddress.IPv6Network("fe80::/10")
_UNIQUE_LOCAL_V6 = ipaddress.IPv6Network("fc00::/7")


def parse_ip(text: str):
    """Parse an IPv4/IPv6 address, returning None when the text is not one"""
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def is_valid_ip(text: str) -> bool:
    return parse_ip(text) is not None


def is_public(ip_text: str) -> bool:
    """
    Check whether an address is a routable internet address

    Private, loopback, link-local, multicast, reserved and broadcast
    addresses are not public. Unparsable text is not public either.
    """
    addr = parse_ip(ip_text)
    if addr is None:
        return False

    if addr.version == 4:
        return not any(addr in net for net in _EXCLUDED_V4)

    if addr.is_loopback or addr.is_unspecified or addr.is_multicast:
        return False
    if addr in _LINK_LOCAL_V6 or addr in _UNIQUE_LOCAL_V6:
        return False
    return True
