import socket
import select
import logging
from typing import Optional, Tuple

from .acl import AccessControlList, get_client_ip
from .errors import BadRequest
from .forwarding import ForwardingHandler
from .models import HTTPRequest, HTTPResponse
from .registry import ConnectionRegistry, close_socket
from .tunnel import TunnelHandler

logger = logging.getLogger(__name__)

MAX_HEAD_SIZE = 64 * 1024


class RequestHandler:
    """Reads one request from a client connection and hands it to the right relay."""

    def __init__(self, acl: AccessControlList, registry: ConnectionRegistry,
                 timeout: float = 10, buffer_size: int = 65536):
        """
        Initialize the request handler.

        Args:
            acl: Access control list consulted for every request
            registry: Connection registry shared with the shutdown logic
            timeout: Socket inactivity bound in seconds
            buffer_size: Relay read size
        """
        self._timeout = timeout
        self._forwarding = ForwardingHandler(acl, registry, timeout, buffer_size)
        self._tunnel = TunnelHandler(acl, registry, timeout, buffer_size)

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int]) -> None:
        """
        Handle an individual client connection.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
        """
        client_socket.settimeout(self._timeout)

        try:
            head, leftover = self._read_request(client_socket)
            if head is None:
                return

            request = HTTPRequest.from_raw_head(head)
            if not request:
                HTTPResponse.create_error(400, "Bad Request").send(client_socket)
                return

            client_ip = get_client_ip(request.header_map(), client_address[0])
            if request.is_connect:
                self._tunnel.handle(client_socket, request, leftover, client_ip)
            else:
                self._forwarding.handle(client_socket, request, leftover, client_ip)

        except BadRequest as e:
            logger.warning(f"Rejected request from {client_address}: {e}")
            try:
                HTTPResponse.create_error(e.status_code, e.reason, str(e)).send(client_socket)
            except OSError:
                pass
        except socket.timeout:
            logger.info(f"Timed out waiting for client {client_address}")
        except OSError as e:
            logger.error(f"Error handling client {client_address}: {e}")
        finally:
            close_socket(client_socket)

    def _read_request(self, client_socket: socket.socket) -> Tuple[Optional[bytes], bytes]:
        """
        Read the request head from the client socket.

        Returns:
            Tuple of the head (without the blank line; None if the client sent
            nothing usable) and any bytes that arrived after it
        """
        request_data = bytearray()

        while True:
            ready = select.select([client_socket], [], [], self._timeout)
            if not ready[0]:  # Timeout
                return None, b''

            chunk = client_socket.recv(4096)
            if not chunk:
                return None, b''

            request_data.extend(chunk)
            # Headers end at the first double CRLF; anything after belongs to the body or tunnel
            end = request_data.find(b'\r\n\r\n')
            if end != -1:
                return bytes(request_data[:end]), bytes(request_data[end + 4:])

            if len(request_data) > MAX_HEAD_SIZE:
                raise BadRequest("Request head too large")
