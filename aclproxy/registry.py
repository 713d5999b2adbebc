import itertools
import logging
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class ShutdownState:
    """Process-wide shutdown flag; flips from False to True exactly once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._shutting_down = False

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def begin(self) -> bool:
        """
        Enter the shutting-down state.

        Returns:
            True for the call that performed the transition, False afterwards
        """
        with self._lock:
            if self._shutting_down:
                return False
            self._shutting_down = True
            return True


@dataclass
class ConnectionRecord:
    """A live transport connection. The registry tracks it but does not own it."""
    id: str
    role: str
    connection: socket.socket = field(repr=False)
    created_at: float = field(default_factory=time.time)


def close_socket(sock: socket.socket) -> None:
    """Shut down and close a socket, ignoring errors from an already-dead peer."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


class ConnectionRegistry:
    """
    Table of live connections, used for observability and forced close.

    Handlers run on one thread per client connection, so every mutation
    takes the registry lock.
    """

    def __init__(self, state: Optional[ShutdownState] = None):
        self._state = state or ShutdownState()
        self._lock = threading.Lock()
        self._records: Dict[str, ConnectionRecord] = {}
        self._counter = itertools.count(1)

    @property
    def state(self) -> ShutdownState:
        return self._state

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._records

    def records(self) -> List[ConnectionRecord]:
        """Snapshot of the tracked connections."""
        with self._lock:
            return list(self._records.values())

    def track(self, connection: socket.socket, role: str) -> Optional[str]:
        """
        Start tracking a connection.

        Once shutdown has begun, new work is rejected: the connection is
        closed immediately and nothing is recorded.

        Args:
            connection: Socket to track
            role: Human-readable tag such as "HTTP-client"

        Returns:
            The new connection id, or None if the connection was refused
        """
        if self._state.is_shutting_down:
            logger.info(f"Refusing {role} connection during shutdown")
            close_socket(connection)
            return None

        with self._lock:
            connection_id = f"{role}-{next(self._counter)}"
            self._records[connection_id] = ConnectionRecord(connection_id, role, connection)
            total = len(self._records)
        logger.info(f"New connection: {connection_id} ({total} total)")
        return connection_id

    def untrack(self, connection_id: Optional[str]) -> bool:
        """
        Stop tracking a connection. Safe to call repeatedly for the same id.

        Returns:
            True only for the call that actually removed the record
        """
        if connection_id is None:
            return False
        with self._lock:
            record = self._records.pop(connection_id, None)
            remaining = len(self._records)
        if record is None:
            return False
        logger.info(f"Connection closed: {connection_id} ({remaining} remaining)")
        return True

    @contextmanager
    def tracked(self, connection: socket.socket, role: str) -> Iterator[Optional[str]]:
        """Track a connection for the duration of a block; yields its id (or None)."""
        connection_id = self.track(connection, role)
        try:
            yield connection_id
        finally:
            self.untrack(connection_id)

    def destroy_all(self) -> int:
        """
        Forcibly close every tracked connection and clear the table.

        Returns:
            Number of connections destroyed
        """
        with self._lock:
            records = list(self._records.values())
            self._records.clear()

        logger.info(f"Forcefully closing {len(records)} active connections...")
        for record in records:
            close_socket(record.connection)
        return len(records)
