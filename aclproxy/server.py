import socket
import threading
import logging
from typing import Iterable, Optional

from .acl import AccessControlList
from .config import ProxyConfig
from .handler import RequestHandler
from .registry import ConnectionRegistry, close_socket

logger = logging.getLogger(__name__)


class ProxyServer:
    """TCP listener for the forward proxy; one handler thread per client connection."""

    def __init__(self, host: str = "0.0.0.0", port: int = 32000,
                 allowed_ips: Iterable[str] = (),
                 registry: Optional[ConnectionRegistry] = None,
                 timeout: float = 10, buffer_size: int = 65536,
                 max_connections: int = 128):
        """
        Initialize the proxy server.

        Args:
            host: Host address to bind the proxy
            port: Port number to listen on; 0 picks a free port at start()
            allowed_ips: Allow-list patterns; empty means open to all clients
            registry: Connection registry, created if not supplied
            timeout: Outbound inactivity bound in seconds
            buffer_size: Relay read size
            max_connections: Listen backlog
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._acl = AccessControlList(allowed_ips)
        self._registry = registry or ConnectionRegistry()

        # Initialize server socket
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Initialize request handler
        self._handler = RequestHandler(self._acl, self._registry, timeout, buffer_size)

        self._running = False
        self._ready = threading.Event()

    @classmethod
    def from_config(cls, config: ProxyConfig,
                    registry: Optional[ConnectionRegistry] = None) -> 'ProxyServer':
        return cls(
            host=config.host,
            port=config.port,
            allowed_ips=config.allowed_ips,
            registry=registry,
            timeout=config.timeout,
            buffer_size=config.buffer_size,
            max_connections=config.max_connections
        )

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number (the bound one once the server has started)."""
        return self._port

    @property
    def acl(self) -> AccessControlList:
        return self._acl

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def server_socket(self) -> socket.socket:
        """Get the server socket."""
        return self._server_socket

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until start() is listening."""
        return self._ready.wait(timeout)

    def _log_startup(self) -> None:
        logger.info(f"Forward HTTP/HTTPS proxy server running on {self._host}:{self._port}")
        logger.info("Using IPv4 preference with IPv6 fallback")
        if len(self._acl):
            logger.info("Access Control List enabled:")
            for pattern in self._acl.describe():
                logger.info(f"  - {pattern}")
        else:
            logger.info("No ACL restrictions - proxy is open to all IPs")

    def start(self) -> None:
        """Start the proxy server and serve until shutdown() is called."""
        self._running = True
        try:
            self._server_socket.bind((self._host, self._port))
            self._server_socket.listen(self._max_connections)
            self._port = self._server_socket.getsockname()[1]
            self._log_startup()
            self._ready.set()

            while self._running:
                try:
                    client_socket, client_address = self._server_socket.accept()
                    if not self._running or self._registry.state.is_shutting_down:
                        close_socket(client_socket)
                        break

                    # Handle each client in a separate thread
                    thread = threading.Thread(
                        target=self._handler.handle_client,
                        args=(client_socket, client_address)
                    )
                    thread.daemon = True
                    thread.start()
                except OSError as e:
                    if self._running:  # Only log if we're still meant to be running
                        logger.error(f"Server error: {e}")

        finally:
            self._running = False
            self._server_socket.close()

    def shutdown(self) -> None:
        """Stop accepting new connections; in-flight handlers keep running."""
        if not self._running:
            self._server_socket.close()
            return
        self._running = False
        # Create a dummy connection to unblock accept()
        wake_host = "127.0.0.1" if self._host in ("", "0.0.0.0") else self._host
        try:
            with socket.create_connection((wake_host, self._port), timeout=1):
                pass
        except OSError:
            pass
        self._server_socket.close()
        logger.info("Proxy server stopped accepting new connections")
