import logging
import select
import socket
import threading
from typing import BinaryIO, Iterator, Optional

from .acl import AccessControlList
from .dialer import dial_with_fallback
from .errors import (AccessDenied, BadRequest, ConnectFailure, GatewayTimeout,
                     ResolutionFailure, TransportError)
from .models import (HTTPRequest, HTTPResponse, ProxyContext, ProxyTarget,
                     REQUEST_HOP_HEADERS, RESPONSE_HOP_HEADERS, Strategy,
                     strip_headers)
from .registry import ConnectionRegistry, close_socket

logger = logging.getLogger(__name__)

ACCESS_DENIED_MESSAGE = "Access denied: Your IP is not allowed to use this proxy"
MAX_LINE = 65536
POLL_INTERVAL = 0.5


class RequestBodyPump(threading.Thread):
    """
    Streams the client request body upstream while the response is relayed.

    `remaining` is the declared Content-Length; None means the length is
    unknown (e.g. a chunked upload) and bytes are passed through until the
    client stops sending or the pump is stopped.
    """

    def __init__(self, client: socket.socket, upstream: socket.socket,
                 leftover: bytes, remaining: Optional[int], buffer_size: int):
        super().__init__(daemon=True)
        self._client = client
        self._upstream = upstream
        self._leftover = leftover
        self._remaining = remaining
        self._buffer_size = buffer_size
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        remaining = self._remaining
        try:
            leftover = self._leftover
            if remaining is not None:
                leftover = leftover[:remaining]
                remaining -= len(leftover)
            if leftover:
                self._upstream.sendall(leftover)

            while remaining is None or remaining > 0:
                if self._stop_event.is_set():
                    return
                readable, _, _ = select.select([self._client], [], [], POLL_INTERVAL)
                if not readable:
                    continue
                size = self._buffer_size if remaining is None else min(self._buffer_size, remaining)
                data = self._client.recv(size)
                if not data:
                    return
                self._upstream.sendall(data)
                if remaining is not None:
                    remaining -= len(data)
        except (OSError, ValueError) as e:
            # ValueError: select() on a socket closed underneath us
            logger.debug(f"Request body relay stopped: {e}")


class ForwardingHandler:
    """Relays plain (non-CONNECT) HTTP proxy requests."""

    def __init__(self, acl: AccessControlList, registry: ConnectionRegistry,
                 timeout: float = 10, buffer_size: int = 65536):
        self._acl = acl
        self._registry = registry
        self._timeout = timeout
        self._buffer_size = buffer_size

    def handle(self, client: socket.socket, request: HTTPRequest,
               leftover: bytes, client_ip: str) -> None:
        """
        Proxy one plain HTTP request.

        Args:
            client: Client socket; closed by the caller afterwards
            request: Parsed request head
            leftover: Bytes read past the head, i.e. the start of the body
            client_ip: Address used for access control
        """
        context = ProxyContext(client_ip, Strategy.HTTP)

        if not self._acl.is_allowed(client_ip):
            logger.warning(f"Blocked HTTP request from unauthorized IP: {client_ip}")
            denied = AccessDenied(ACCESS_DENIED_MESSAGE)
            HTTPResponse.create_error(denied.status_code, denied.reason, str(denied)).send(client)
            return

        try:
            context.target = ProxyTarget.from_request_target(
                request.target, request.get_header('host'))
        except ValueError as e:
            logger.warning(f"Bad request target from {client_ip}: {e}")
            error = BadRequest(f"Bad request: {e}")
            HTTPResponse.create_error(error.status_code, error.reason, str(error)).send(client)
            return

        logger.info(f"Proxying HTTP request from {client_ip}: {request.method} {request.target}")

        client_id = self._registry.track(client, f"HTTP-client-{client_ip}")
        if client_id is None:
            return
        try:
            self._forward(client, request, leftover, context)
        finally:
            self._registry.untrack(client_id)

    def build_outbound_head(self, request: HTTPRequest, target: ProxyTarget) -> bytes:
        """Rewrite the request head for the origin: origin-form path, Host, no hop headers."""
        headers = strip_headers(request.headers, REQUEST_HOP_HEADERS + ('host',))
        headers.insert(0, ('Host', target.authority))
        headers.append(('Connection', 'close'))
        return HTTPRequest(request.method, target.path, 'HTTP/1.1', headers).to_bytes()

    def _forward(self, client: socket.socket, request: HTTPRequest,
                 leftover: bytes, context: ProxyContext) -> None:
        target = context.target
        outbound_head = self.build_outbound_head(request, target)

        try:
            upstream, context.fell_back = dial_with_fallback(
                target.host, target.port, self._timeout)
        except GatewayTimeout as e:
            logger.info(f"HTTP request timeout for: {target.host}")
            HTTPResponse.create_error(e.status_code, e.reason).send(client)
            return
        except ResolutionFailure as e:
            logger.error(f"Fallback request also failed for {target.host}: {e}")
            HTTPResponse.create_error(e.status_code, e.reason, f"Proxy error: {e}").send(client)
            return
        except ConnectFailure as e:
            logger.error(f"Proxy request error for {target.host}: {e}")
            HTTPResponse.create_error(e.status_code, e.reason, f"Proxy error: {e}").send(client)
            return

        context.upstream = upstream
        role = "HTTP-fallback" if context.fell_back else "HTTP-upstream"
        upstream_id = self._registry.track(upstream, f"{role}-{target.host}")
        if upstream_id is None:
            return

        pump = None
        try:
            upstream.sendall(outbound_head)
            remaining = self._request_body_length(request)
            if remaining != 0:
                pump = RequestBodyPump(client, upstream, leftover, remaining, self._buffer_size)
                pump.start()
            self._relay_response(client, upstream, request)
        except OSError as e:
            logger.error(f"Proxy request error for {target.host}: {e}")
        finally:
            if pump is not None:
                pump.stop()
            close_socket(upstream)
            self._registry.untrack(upstream_id)

    @staticmethod
    def _request_body_length(request: HTTPRequest) -> Optional[int]:
        if request.get_header('transfer-encoding'):
            return None
        try:
            return max(int(request.get_header('content-length') or 0), 0)
        except ValueError:
            return 0

    def _relay_response(self, client: socket.socket, upstream: socket.socket,
                        request: HTTPRequest) -> None:
        reader = upstream.makefile('rb')
        try:
            try:
                response = self._read_response_head(reader)
                # Interim responses go straight through; the final one follows
                while 100 <= response.status_code < 200 and response.status_code != 101:
                    client.sendall(response.head_bytes())
                    response = self._read_response_head(reader)
            except GatewayTimeout as e:
                logger.info(f"HTTP request timeout for: {request.target}")
                HTTPResponse.create_error(e.status_code, e.reason).send(client)
                return
            except TransportError as e:
                logger.error(f"Proxy request error for {request.target}: {e}")
                HTTPResponse.create_error(e.status_code, e.reason, f"Proxy error: {e}").send(client)
                return

            chunked = 'chunked' in (response.get_header('transfer-encoding') or '').lower()
            headers = strip_headers(response.headers, RESPONSE_HOP_HEADERS)
            if chunked:
                headers = strip_headers(headers, ('content-length',))
            headers.append(('Connection', 'close'))
            client.sendall(HTTPResponse(
                response.status_code, response.status_message, headers).head_bytes())

            try:
                for data in self._iter_body(reader, request, response, chunked):
                    client.sendall(data)
            except socket.timeout:
                logger.info(f"Response body timeout for: {request.target}")
            except TransportError as e:
                logger.info(f"Response body truncated for {request.target}: {e}")
        finally:
            reader.close()

    def _read_response_head(self, reader: BinaryIO) -> HTTPResponse:
        lines = []
        try:
            while True:
                line = reader.readline(MAX_LINE)
                if not line:
                    raise TransportError("origin closed the connection before responding")
                if line in (b'\r\n', b'\n'):
                    if lines:
                        break
                    continue
                lines.append(line.rstrip(b'\r\n'))
        except socket.timeout as e:
            raise GatewayTimeout("no response from origin") from e
        except OSError as e:
            raise TransportError(str(e)) from e

        response = HTTPResponse.from_raw_head(b'\r\n'.join(lines))
        if response is None:
            raise TransportError("malformed response head from origin")
        return response

    def _iter_body(self, reader: BinaryIO, request: HTTPRequest,
                   response: HTTPResponse, chunked: bool) -> Iterator[bytes]:
        status = response.status_code
        if request.method == 'HEAD' or status in (204, 304) or 100 <= status < 200:
            return
        if chunked:
            yield from self._iter_chunked(reader)
            return
        try:
            length = int(response.get_header('content-length'))
        except (TypeError, ValueError):
            length = None
        if length is not None:
            yield from self._iter_exact(reader, length)
            return
        while True:
            data = reader.read1(self._buffer_size)
            if not data:
                return
            yield data

    def _iter_exact(self, reader: BinaryIO, length: int) -> Iterator[bytes]:
        while length > 0:
            data = reader.read1(min(self._buffer_size, length))
            if not data:
                raise TransportError(f"origin closed with {length} bytes outstanding")
            length -= len(data)
            yield data

    def _iter_chunked(self, reader: BinaryIO) -> Iterator[bytes]:
        while True:
            line = reader.readline(MAX_LINE)
            if not line:
                raise TransportError("origin closed inside a chunked body")
            try:
                size = int(line.split(b';', 1)[0].strip(), 16)
            except ValueError as e:
                raise TransportError(f"invalid chunk size line {line!r}") from e
            if size == 0:
                # trailers, discarded with the rest of the hop-by-hop framing
                while reader.readline(MAX_LINE) not in (b'\r\n', b'\n', b''):
                    pass
                return
            yield from self._iter_exact(reader, size)
            reader.readline(MAX_LINE)
