import enum
import socket
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

Headers = List[Tuple[str, str]]

# Removed from the client request before it is sent upstream
REQUEST_HOP_HEADERS = ('proxy-connection', 'connection', 'keep-alive')

# Removed from the origin response before it is relayed to the client
RESPONSE_HOP_HEADERS = (
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade'
)


def strip_headers(headers: Headers, names: Iterable[str]) -> Headers:
    """Return headers without any whose lower-cased name is in `names`."""
    drop = {name.lower() for name in names}
    return [(key, value) for key, value in headers if key.lower() not in drop]


def find_header(headers: Headers, name: str) -> Optional[str]:
    """Return the first value of a header, matched case-insensitively."""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def _parse_header_lines(lines: List[str]) -> Headers:
    headers = []
    for line in lines:
        if not line.strip():
            continue
        key, value = line.split(':', 1)
        headers.append((key.strip(), value.strip()))
    return headers


def _format_head(start_line: str, headers: Headers) -> bytes:
    lines = [start_line] + [f"{key}: {value}" for key, value in headers]
    return ('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1')


@dataclass
class HTTPRequest:
    """Model representing the head of an inbound HTTP request."""
    method: str
    target: str
    protocol: str
    headers: Headers

    @classmethod
    def from_raw_head(cls, head: bytes) -> Optional['HTTPRequest']:
        """Create HTTPRequest instance from the raw bytes before the blank line."""
        try:
            lines = head.decode('latin-1').split('\r\n')
            method, target, protocol = lines[0].strip().split()
            return cls(
                method=method.upper(),
                target=target,
                protocol=protocol,
                headers=_parse_header_lines(lines[1:])
            )
        except (ValueError, IndexError):
            return None

    def get_header(self, name: str) -> Optional[str]:
        return find_header(self.headers, name)

    def header_map(self) -> Dict[str, str]:
        """Headers keyed by lower-case name (first occurrence wins)."""
        mapping: Dict[str, str] = {}
        for key, value in self.headers:
            mapping.setdefault(key.lower(), value)
        return mapping

    @property
    def is_connect(self) -> bool:
        return self.method == 'CONNECT'

    def to_bytes(self) -> bytes:
        return _format_head(f"{self.method} {self.target} {self.protocol}", self.headers)


@dataclass
class HTTPResponse:
    """Model representing an HTTP response head, plus an optional body for local replies."""
    status_code: int
    status_message: str
    headers: Headers
    body: bytes = b''
    protocol: str = 'HTTP/1.1'

    @classmethod
    def from_raw_head(cls, head: bytes) -> Optional['HTTPResponse']:
        """Create HTTPResponse instance from raw status line and header bytes."""
        try:
            status_line, *header_lines = head.decode('latin-1').split('\r\n')
            protocol, status_code, *status_message = status_line.split(' ')
            return cls(
                status_code=int(status_code),
                status_message=' '.join(status_message),
                headers=_parse_header_lines(header_lines),
                protocol=protocol
            )
        except (ValueError, IndexError):
            return None

    def get_header(self, name: str) -> Optional[str]:
        return find_header(self.headers, name)

    def head_bytes(self) -> bytes:
        return _format_head(
            f"{self.protocol} {self.status_code} {self.status_message}".rstrip(),
            self.headers
        )

    def to_bytes(self) -> bytes:
        return self.head_bytes() + self.body

    def send(self, sock: socket.socket) -> None:
        sock.sendall(self.to_bytes())

    @classmethod
    def create_error(cls, status_code: int, status_message: str,
                     message: Optional[str] = None) -> 'HTTPResponse':
        """
        Create a plain-text error response.

        Args:
            status_code: HTTP status code
            status_message: Reason phrase
            message: Body text; defaults to the reason phrase

        Returns:
            HTTPResponse ready to be written to the client
        """
        body = (message if message is not None else status_message).encode('utf-8')
        return cls(
            status_code=status_code,
            status_message=status_message,
            headers=[
                ('Content-Type', 'text/plain'),
                ('Content-Length', str(len(body))),
                ('Connection', 'close')
            ],
            body=body
        )


@dataclass(frozen=True)
class ProxyTarget:
    """Where a proxied request or tunnel goes."""
    host: str
    port: int
    path: str = '/'

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ':' in self.host else self.host
        return host if self.port in (80, None) else f"{host}:{self.port}"

    @classmethod
    def from_request_target(cls, target: str,
                            host_header: Optional[str] = None) -> 'ProxyTarget':
        """
        Parse a plain-HTTP request target.

        Absolute-form targets carry the host themselves; origin-form targets
        fall back to the Host header.

        Raises:
            ValueError: if no host can be determined or the port is invalid
        """
        if '://' not in target:
            if not host_header:
                raise ValueError(f"no host in request target {target!r}")
            target = f"http://{host_header}{target}"

        parts = urlsplit(target)
        if not parts.hostname:
            raise ValueError(f"no host in request target {target!r}")
        port = parts.port
        if port is None:
            port = 80
        elif port == 0:
            raise ValueError(f"invalid port in request target {target!r}")
        path = parts.path or '/'
        if parts.query:
            path = f"{path}?{parts.query}"
        return cls(parts.hostname, port, path)

    @classmethod
    def from_connect_target(cls, target: str, default_port: int = 443) -> 'ProxyTarget':
        """Parse `host:port` from a CONNECT target; unparsable ports become the default."""
        target = target.strip()
        if target.startswith('['):
            host, _, rest = target[1:].partition(']')
            port_text = rest[1:] if rest.startswith(':') else ''
        else:
            host, _, port_text = target.partition(':')
        try:
            port = int(port_text)
        except ValueError:
            port = default_port
        if not 0 < port < 65536:
            port = default_port
        return cls(host, port, '')

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class Strategy(enum.Enum):
    HTTP = 'http'
    TUNNEL = 'tunnel'


class TunnelState(enum.Enum):
    PENDING_ACL = 'pending_acl'
    DENIED = 'denied'
    DIALING = 'dialing'
    DIALING_FALLBACK = 'dialing_fallback'
    CONNECTED = 'connected'
    TUNNELING = 'tunneling'
    CLOSED = 'closed'


@dataclass
class ProxyContext:
    """Per-request state, discarded once the response or tunnel finishes."""
    client_ip: str
    strategy: Strategy
    target: Optional[ProxyTarget] = None
    upstream: Optional[socket.socket] = field(default=None, repr=False)
    fell_back: bool = False
    state: TunnelState = TunnelState.PENDING_ACL
