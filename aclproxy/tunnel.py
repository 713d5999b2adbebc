import logging
import select
import socket

from .acl import AccessControlList
from .dialer import dial_with_fallback
from .errors import GatewayTimeout, ProxyError, TransportError
from .models import HTTPRequest, ProxyContext, ProxyTarget, Strategy, TunnelState
from .registry import ConnectionRegistry, close_socket

logger = logging.getLogger(__name__)

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
CONNECTION_FAILED = b"HTTP/1.1 500 Connection Failed\r\n\r\n"
ACCESS_DENIED = (b"HTTP/1.1 403 Forbidden\r\n\r\n"
                 b"Access denied: Your IP is not allowed to use this proxy")


class TunnelHandler:
    """
    Handles CONNECT requests by splicing the client onto a raw TCP connection.

    Each request walks PENDING_ACL -> DIALING [-> DIALING_FALLBACK] ->
    CONNECTED -> TUNNELING -> CLOSED, or PENDING_ACL -> DENIED -> CLOSED.
    """

    def __init__(self, acl: AccessControlList, registry: ConnectionRegistry,
                 timeout: float = 10, buffer_size: int = 65536):
        self._acl = acl
        self._registry = registry
        self._timeout = timeout
        self._buffer_size = buffer_size

    @staticmethod
    def _transition(context: ProxyContext, state: TunnelState) -> None:
        logger.debug(f"CONNECT {context.target} from {context.client_ip}: "
                     f"{context.state.name} -> {state.name}")
        context.state = state

    def handle(self, client: socket.socket, request: HTTPRequest,
               head: bytes, client_ip: str) -> ProxyContext:
        """
        Run one CONNECT tunnel to completion.

        Args:
            client: Client socket; closed by the caller afterwards
            request: Parsed CONNECT request head
            head: Bytes the client sent after the CONNECT head, forwarded first
            client_ip: Address used for access control

        Returns:
            The finished context, in the CLOSED state
        """
        context = ProxyContext(client_ip, Strategy.TUNNEL)
        context.target = ProxyTarget.from_connect_target(request.target)

        if not self._acl.is_allowed(client_ip):
            logger.warning(f"Blocked HTTPS request from unauthorized IP: {client_ip}")
            self._transition(context, TunnelState.DENIED)
            try:
                client.sendall(ACCESS_DENIED)
            except OSError as e:
                logger.debug(f"Could not deliver denial to {client_ip}: {e}")
            self._transition(context, TunnelState.CLOSED)
            return context

        logger.info(f"Proxying HTTPS request from {client_ip}: CONNECT {request.target}")

        client_id = self._registry.track(client, f"HTTPS-client-{client_ip}")
        try:
            if client_id is not None:
                self._open_tunnel(client, head, context)
        finally:
            self._registry.untrack(client_id)
            self._transition(context, TunnelState.CLOSED)
        return context

    def _open_tunnel(self, client: socket.socket, head: bytes,
                     context: ProxyContext) -> None:
        target = context.target
        self._transition(context, TunnelState.DIALING)
        try:
            upstream, context.fell_back = dial_with_fallback(
                target.host, target.port, self._timeout,
                on_fallback=lambda: self._transition(context, TunnelState.DIALING_FALLBACK))
        except GatewayTimeout:
            logger.info(f"Socket timeout for: {target.host}")
            return
        except ProxyError as e:
            logger.error(f"Connection failed for {target}: {e}")
            try:
                client.sendall(CONNECTION_FAILED)
            except OSError:
                pass
            return

        logger.info(f"Successfully connected to {target} for client {context.client_ip}")
        context.upstream = upstream
        self._transition(context, TunnelState.CONNECTED)
        role = "HTTPS-fallback" if context.fell_back else "HTTPS-tunnel-server"
        upstream_id = self._registry.track(upstream, f"{role}-{target.host}")
        if upstream_id is None:
            return

        try:
            client.sendall(CONNECTION_ESTABLISHED)
            if head:
                upstream.sendall(head)
            self._transition(context, TunnelState.TUNNELING)
            self.splice(client, upstream)
        except (OSError, TransportError) as e:
            logger.info(f"Tunnel to {target} closed: {e}")
        finally:
            close_socket(upstream)
            self._registry.untrack(upstream_id)

    def splice(self, client: socket.socket, upstream: socket.socket) -> None:
        """
        Relay bytes both ways until both sides finish or the tunnel goes idle.

        EOF on one side is passed on as a write shutdown of the other, so
        half-closed connections keep draining in the open direction.

        Raises:
            TransportError: if either side fails mid-relay
        """
        peers = {client: upstream, upstream: client}
        readers = [client, upstream]
        while readers:
            readable, _, _ = select.select(readers, [], [], self._timeout)
            if not readable:
                logger.info(f"Tunnel idle for {self._timeout}s, closing")
                return
            for source in readable:
                destination = peers[source]
                try:
                    data = source.recv(self._buffer_size)
                    if data:
                        destination.sendall(data)
                        continue
                    readers.remove(source)
                    destination.shutdown(socket.SHUT_WR)
                except OSError as e:
                    side = "Client" if source is client else "Server"
                    raise TransportError(f"{side} socket error: {e}") from e
