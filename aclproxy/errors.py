class ProxyError(Exception):
    """Base class for failures the proxy turns into a client response or close."""

    status_code = 500
    reason = "Internal Server Error"


class BadRequest(ProxyError):
    status_code = 400
    reason = "Bad Request"


class AccessDenied(ProxyError):
    """Client IP did not satisfy the access control list."""

    status_code = 403
    reason = "Forbidden"


class ResolutionFailure(ProxyError):
    """Name resolution failed for the requested address family."""

    status_code = 502
    reason = "Bad Gateway"


class ConnectFailure(ProxyError):
    """Target refused, unreachable or reset the outbound connection."""

    status_code = 500
    reason = "Internal Server Error"


class GatewayTimeout(ProxyError):
    status_code = 504
    reason = "Gateway Timeout"


class TransportError(ProxyError):
    """Either side of an established relay failed."""
