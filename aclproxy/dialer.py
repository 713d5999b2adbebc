import logging
import socket
from typing import Callable, List, Optional, Tuple

from .errors import ConnectFailure, GatewayTimeout, ResolutionFailure

logger = logging.getLogger(__name__)

PREFERRED_FAMILY = socket.AF_INET
ANY_FAMILY = socket.AF_UNSPEC

AddressInfo = Tuple[int, int, int, str, tuple]


def resolve(host: str, port: int, family: int) -> List[AddressInfo]:
    return socket.getaddrinfo(host, port, family, socket.SOCK_STREAM)


def dial(host: str, port: int, timeout: float,
         family: int = PREFERRED_FAMILY) -> socket.socket:
    """
    Open a TCP connection, restricted to one address family if requested.

    Args:
        host: Target host name or address
        port: Target port
        timeout: Connect timeout, also left on the socket as its inactivity bound
        family: socket.AF_INET to force IPv4, socket.AF_UNSPEC for dual-stack

    Returns:
        Connected socket

    Raises:
        ResolutionFailure: if the name is not a valid host name or does not
            resolve for that family
        GatewayTimeout: if connecting takes longer than `timeout`
        ConnectFailure: for any other connect error
    """
    try:
        addresses = resolve(host, port, family)
    except socket.gaierror as e:
        raise ResolutionFailure(f"{host}: {e.strerror or e}") from e
    except UnicodeError as e:
        # IDNA rejects empty or over-long labels before any lookup happens
        raise ResolutionFailure(f"{host}: invalid host name ({e})") from e
    if not addresses:
        raise ResolutionFailure(f"{host}: no addresses")

    last_error: Optional[OSError] = None
    for af, socktype, proto, _, sockaddr in addresses:
        sock = socket.socket(af, socktype, proto)
        sock.settimeout(timeout)
        try:
            sock.connect(sockaddr)
            return sock
        except socket.timeout as e:
            sock.close()
            raise GatewayTimeout(f"connect to {host}:{port} timed out") from e
        except OSError as e:
            sock.close()
            last_error = e

    raise ConnectFailure(f"connect {host}:{port}: {last_error.strerror or last_error}") \
        from last_error


def dial_with_fallback(host: str, port: int, timeout: float,
                       on_fallback: Optional[Callable[[], None]] = None
                       ) -> Tuple[socket.socket, bool]:
    """
    Dial IPv4 first; on a resolution failure retry exactly once without the
    family restriction. Timeouts and connect errors are not retried.

    Args:
        on_fallback: Called just before the fallback attempt

    Returns:
        Tuple of the connected socket and whether the fallback was used
    """
    try:
        return dial(host, port, timeout, PREFERRED_FAMILY), False
    except ResolutionFailure as e:
        logger.warning(f"Resolution failed for {host} ({e}), retrying without IP family restriction...")

    if on_fallback is not None:
        on_fallback()
    return dial(host, port, timeout, ANY_FAMILY), True
