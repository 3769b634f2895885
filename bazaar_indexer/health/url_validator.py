"""
SSRF guard for endpoint URLs.

Only https:// targets are allowed, and hostnames that are loopback, private,
link-local, unique-local or cloud-metadata literals are rejected. This is a
string-level check: hostnames are never resolved, so a DNS record pointing a
public name at an internal address is not caught here.
"""
import ipaddress
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "::1",
    "::",
    # Cloud metadata endpoints
    "metadata.google.internal",
    "metadata.goog",
    "169.254.169.254",
    "fd00:ec2::254",
})

PRIVATE_IPV4_NETWORKS = tuple(ipaddress.IPv4Network(n) for n in (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "127.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "169.254.0.0/16",
))

UNIQUE_LOCAL_V6 = ipaddress.IPv6Network("fc00::/7")
LINK_LOCAL_V6 = ipaddress.IPv6Network("fe80::/10")

_DIGITS = {8: "01234567", 10: "0123456789", 16: "0123456789abcdefABCDEF"}


@dataclass(frozen=True)
class UrlValidationResult:
    valid: bool
    reason: Optional[str] = None


def _parse_ipv4_part(part: str) -> Optional[int]:
    if not part:
        return None
    if part[:2] in ("0x", "0X"):
        digits, base = part[2:], 16
        if not digits:
            return 0
    elif len(part) > 1 and part[0] == "0":
        digits, base = part[1:], 8
    else:
        digits, base = part, 10
    if not all(c in _DIGITS[base] for c in digits):
        return None
    return int(digits, base)


def _ends_in_number(hostname: str) -> bool:
    last = hostname.split(".")[-1]
    if last and all(c in _DIGITS[10] for c in last):
        return True
    return last[:2] in ("0x", "0X") and all(c in _DIGITS[16] for c in last[2:])


def _parse_ipv4(hostname: str) -> Optional[ipaddress.IPv4Address]:
    """
    Parses an IPv4 literal the way browsers and inet_aton do: one to four
    dot-separated parts, each decimal, 0x-hex or 0-prefixed octal, with the
    last part filling the remaining bytes. So 2130706433, 127.1, 0x7f000001
    and 0177.0.0.1 are all 127.0.0.1.
    """
    parts = hostname.split(".")
    if not 1 <= len(parts) <= 4:
        return None
    numbers = [_parse_ipv4_part(p) for p in parts]
    if any(n is None for n in numbers):
        return None

    *head, last = numbers
    if any(n > 255 for n in head) or last >= 256 ** (5 - len(numbers)):
        return None

    value = last
    for i, n in enumerate(head):
        value += n << (8 * (3 - i))
    return ipaddress.IPv4Address(value)


def is_private_ipv4(hostname: str) -> bool:
    address = _parse_ipv4(hostname)
    if address is None:
        return False
    return any(address in network for network in PRIVATE_IPV4_NETWORKS)


def is_private_ipv6(hostname: str) -> bool:
    host = hostname.strip("[]").lower()
    if ":" not in host:
        return False
    try:
        address = ipaddress.IPv6Address(host)
    except ValueError:
        return False

    if address == ipaddress.IPv6Address("::1") or address == ipaddress.IPv6Address("::"):
        return True
    if address in UNIQUE_LOCAL_V6 or address in LINK_LOCAL_V6:
        return True

    # ::ffff:a.b.c.d and its hex spelling ::ffff:xxxx:xxxx both land here
    mapped = address.ipv4_mapped
    if mapped is not None and is_private_ipv4(str(mapped)):
        return True
    return False


def validate_url(url: str) -> UrlValidationResult:
    """Returns whether ``url`` is safe to probe, with the rejection reason if not."""
    if not isinstance(url, str) or not url.strip():
        return UrlValidationResult(False, "Invalid URL format (malformed)")

    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
        parts.port  # raises ValueError on a non-numeric port
    except ValueError:
        return UrlValidationResult(False, "Invalid URL format (malformed)")

    if not parts.scheme:
        return UrlValidationResult(False, "Invalid URL format (malformed)")

    scheme = parts.scheme.lower()
    if scheme != "https":
        return UrlValidationResult(False, f"Invalid protocol: {scheme}: (only https:// allowed)")

    if not hostname:
        return UrlValidationResult(False, "Invalid URL format (malformed)")

    hostname = hostname.lower().rstrip(".")

    if hostname in BLOCKED_HOSTNAMES:
        return UrlValidationResult(False, f"Blocked hostname: {hostname}")

    # A host ending in a number must be a well-formed IPv4 literal
    if ":" not in hostname and _ends_in_number(hostname) and _parse_ipv4(hostname) is None:
        return UrlValidationResult(False, "Invalid URL format (malformed)")

    if is_private_ipv4(hostname):
        return UrlValidationResult(False, f"Blocked private IP: {hostname}")

    if is_private_ipv6(hostname):
        return UrlValidationResult(False, f"Blocked private IPv6: {hostname}")

    return UrlValidationResult(True)
