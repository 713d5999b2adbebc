"""
Client IP access control.

Patterns come in three shapes, picked from the configuration text:

    10.1.2.3        exact address
    192.168.1.*     dotted wildcard, one token per octet
    10.0.0.0/24     CIDR block

Matching never raises: anything that cannot be parsed simply does not match.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

WILDCARD = "*"
MAPPED_IPV4_PREFIX = "::ffff:"


def normalize_ip(ip: str) -> str:
    """Strip surrounding whitespace and an IPv6-mapped-IPv4 prefix."""
    ip = (ip or "").strip()
    if ip.lower().startswith(MAPPED_IPV4_PREFIX):
        return ip[len(MAPPED_IPV4_PREFIX):]
    return ip


def parse_octet(text: str) -> Optional[int]:
    """Return the octet value of a decimal segment, or None if it is not 0-255."""
    if not text.isdigit() or len(text) > 3:
        return None
    value = int(text)
    return value if value <= 255 else None


@dataclass(frozen=True)
class ExactPattern:
    ip: str

    def matches(self, ip: str) -> bool:
        return normalize_ip(self.ip) == normalize_ip(ip)


@dataclass(frozen=True)
class WildcardPattern:
    segments: Tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> 'WildcardPattern':
        return cls(tuple(segment.strip() for segment in text.split('.')))

    def matches(self, ip: str) -> bool:
        octets = normalize_ip(ip).split('.')
        if len(octets) != len(self.segments):
            return False
        for segment, octet in zip(self.segments, octets):
            if parse_octet(octet) is None:
                return False
            if segment != WILDCARD and segment != octet:
                return False
        return True


@dataclass(frozen=True)
class CidrPattern:
    """
    An IPv4 network and prefix length.

    `network` is None when the configuration text was malformed; such a
    pattern is kept so the list mirrors the configuration, but matches nothing.
    """
    text: str
    network: Optional[ipaddress.IPv4Network]

    @classmethod
    def parse(cls, text: str) -> 'CidrPattern':
        address, _, bits = text.partition('/')
        try:
            if not bits.isdigit() or int(bits) > 32:
                raise ValueError(f"invalid prefix length {bits!r}")
            if len(address.split('.')) != 4 or any(
                    parse_octet(octet) is None for octet in address.split('.')):
                raise ValueError(f"invalid network address {address!r}")
            network = ipaddress.IPv4Network(f"{address}/{int(bits)}", strict=False)
        except ValueError as e:
            logger.warning(f"Ignoring malformed CIDR pattern {text!r}: {e}")
            network = None
        return cls(text, network)

    def matches(self, ip: str) -> bool:
        if self.network is None:
            return False
        target = int(ipaddress.IPv4Address(normalize_ip(ip)))
        start = int(self.network.network_address)
        end = int(self.network.broadcast_address)
        return start <= target <= end


AccessPattern = Union[ExactPattern, WildcardPattern, CidrPattern]


def parse_pattern(text: str) -> AccessPattern:
    """Classify one allow-list entry by its shape."""
    text = text.strip()
    if WILDCARD in text:
        return WildcardPattern.parse(text)
    if '/' in text:
        return CidrPattern.parse(text)
    return ExactPattern(normalize_ip(text))


def matches(pattern: AccessPattern, ip: str) -> bool:
    """
    Check whether an IP address satisfies a pattern.

    Args:
        pattern: Parsed allow-list pattern
        ip: Dotted-decimal client address

    Returns:
        True on a match; False on a mismatch or on any conversion failure
    """
    try:
        return pattern.matches(ip)
    except (ValueError, TypeError, AttributeError):
        return False


class AccessControlList:
    """Ordered allow-list; an empty list admits every client."""

    def __init__(self, patterns: Iterable[str] = ()):
        self._patterns: Tuple[AccessPattern, ...] = tuple(
            parse_pattern(text) for text in patterns if text and text.strip()
        )

    @property
    def patterns(self) -> Tuple[AccessPattern, ...]:
        return self._patterns

    def __len__(self) -> int:
        return len(self._patterns)

    def is_allowed(self, ip: str) -> bool:
        """Return True when the list is empty or any pattern matches."""
        if not self._patterns:
            return True
        return any(matches(pattern, ip) for pattern in self._patterns)

    def describe(self) -> List[str]:
        """Human-readable pattern list for startup logging."""
        descriptions = []
        for pattern in self._patterns:
            if isinstance(pattern, ExactPattern):
                descriptions.append(pattern.ip)
            elif isinstance(pattern, WildcardPattern):
                descriptions.append('.'.join(pattern.segments))
            else:
                descriptions.append(pattern.text)
        return descriptions


def get_client_ip(headers: Mapping[str, str], peer_address: str) -> str:
    """
    Derive the client IP used for access control.

    The first X-Forwarded-For entry wins when the header is present. That header
    is supplied by the client, so anyone who can set it can claim any address;
    deployments that expose the proxy directly should keep that in mind.

    Args:
        headers: Request headers keyed by lower-case name
        peer_address: Address of the transport peer

    Returns:
        Client IP string
    """
    forwarded = headers.get('x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return normalize_ip(peer_address) or 'unknown'
