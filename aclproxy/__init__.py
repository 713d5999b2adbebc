"""
A forward HTTP/HTTPS proxy with client IP allow-listing.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .acl import AccessControlList, get_client_ip, matches, parse_pattern
from .registry import ConnectionRegistry, ShutdownState
from .shutdown import ShutdownCoordinator
from .models import HTTPRequest, HTTPResponse, ProxyTarget
from .config import ProxyConfig

__all__ = [
    'ProxyServer', 'RequestHandler', 'AccessControlList', 'get_client_ip', 'matches',
    'parse_pattern', 'ConnectionRegistry', 'ShutdownState', 'ShutdownCoordinator',
    'HTTPRequest', 'HTTPResponse', 'ProxyTarget', 'ProxyConfig'
]
