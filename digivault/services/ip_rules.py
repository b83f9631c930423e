import ipaddress
import re
from typing import Iterable, Optional


def ip_matches(ip: str, pattern: str) -> bool:
    """Match an address against an exact IP, a CIDR block or a ``*`` wildcard."""
    if ip == pattern:
        return True
    if "/" in pattern:
        try:
            return ipaddress.ip_address(ip) in ipaddress.ip_network(pattern, strict=False)
        except ValueError:
            return False
    if "*" in pattern:
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        return re.match(regex, ip) is not None
    return False


def ip_permitted(ip: Optional[str], allowed: Optional[Iterable[str]]) -> bool:
    allowed = list(allowed or [])
    if not allowed:
        return True
    if not ip:
        return False
    return any(ip_matches(ip, pattern) for pattern in allowed)
