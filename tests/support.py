import json
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Tuple

logger = logging.getLogger(__name__)


class BackendHandler(BaseHTTPRequestHandler):
    """Origin server used behind the proxy in tests."""

    def do_GET(self):
        if self.path.startswith("/api/test"):
            self._send_json_response(200, {
                "message": "Hello from backend!",
                "path": self.path,
                "headers": dict(self.headers)
            })
        elif self.path == "/api/chunked":
            self._send_chunked([b"Hello, ", b"chunked ", b"world!"])
        else:
            self._send_json_response(404, {"error": "Not found"})

    def do_HEAD(self):
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', '42')
        self.end_headers()

    def do_POST(self):
        content_length = int(self.headers.get('Content-Length', 0))
        post_data = self.rfile.read(content_length) if content_length > 0 else b''
        self._send_json_response(200, {
            "message": "Received POST request",
            "path": self.path,
            "data": json.loads(post_data.decode('utf-8')) if post_data else {},
            "headers": dict(self.headers)
        })

    def _send_json_response(self, status_code: int, data: dict):
        response_data = json.dumps(data).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(response_data)))
        self.send_header('Keep-Alive', 'timeout=5')
        self.send_header('Upgrade', 'h2c')
        self.send_header('X-Backend', 'yes')
        self.end_headers()
        self.wfile.write(response_data)

    def _send_chunked(self, chunks):
        self.protocol_version = 'HTTP/1.1'
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain')
        self.send_header('Transfer-Encoding', 'chunked')
        self.send_header('Connection', 'close')
        self.end_headers()
        for chunk in chunks:
            self.wfile.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
        self.wfile.write(b"0\r\n\r\n")
        self.close_connection = True

    def log_message(self, format, *args):
        """Override to use our logger."""
        logger.info(f"{self.address_string()} - {format % args}")


def start_backend() -> Tuple[ThreadingHTTPServer, threading.Thread]:
    server = ThreadingHTTPServer(('127.0.0.1', 0), BackendHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread


class EchoServer:
    """TCP server that echoes every byte back, standing in for a TLS origin."""

    def __init__(self):
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(('127.0.0.1', 0))
        self._socket.listen(8)
        self.port = self._socket.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while True:
            try:
                conn, _ = self._socket.accept()
            except OSError:
                return
            threading.Thread(target=self._echo, args=(conn,), daemon=True).start()

    @staticmethod
    def _echo(conn: socket.socket):
        with conn:
            while True:
                try:
                    data = conn.recv(4096)
                except OSError:
                    return
                if not data:
                    return
                conn.sendall(data)

    def close(self):
        self._socket.close()


def recv_until(sock: socket.socket, expected_length: int, timeout: float = 5) -> bytes:
    """Read until at least `expected_length` bytes arrived or the peer closed."""
    sock.settimeout(timeout)
    data = bytearray()
    while len(data) < expected_length:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


def recv_all(sock: socket.socket, timeout: float = 5) -> bytes:
    """Read until the peer closes."""
    sock.settimeout(timeout)
    data = bytearray()
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return bytes(data)
        data.extend(chunk)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]
