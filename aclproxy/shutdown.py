import logging
import os
import signal
import sys
import threading
from typing import Callable, Iterable, List, Optional

from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)

GRACE_PERIOD = 3
HARD_TIMEOUT = 10


class ShutdownCoordinator:
    """
    Graceful-then-forced termination.

    On the first call to shutdown() the listener stops accepting, a grace
    timer force-closes whatever is still tracked when it fires, and an
    independent hard timer destroys everything and exits the process no
    matter what. Later calls do nothing.
    """

    def __init__(self, server, registry: ConnectionRegistry,
                 grace_period: float = GRACE_PERIOD,
                 hard_timeout: float = HARD_TIMEOUT,
                 exit_func: Callable[[int], None] = os._exit):
        """
        Args:
            server: Object with a shutdown() method that stops accepting
            registry: Registry whose connections get force-closed
            grace_period: Seconds before lingering connections are destroyed
            hard_timeout: Seconds before the process is terminated unconditionally
            exit_func: Process exit function, called with status 0 by the hard timer
        """
        self._server = server
        self._registry = registry
        self._grace_period = grace_period
        self._hard_timeout = hard_timeout
        self._exit_func = exit_func
        self._done = threading.Event()
        self._timers: List[threading.Timer] = []

    @property
    def is_shutting_down(self) -> bool:
        return self._registry.state.is_shutting_down

    @property
    def timers(self) -> List[threading.Timer]:
        return list(self._timers)

    def shutdown(self, reason: str = "requested") -> bool:
        """
        Begin shutdown.

        Returns:
            True if this call started the shutdown, False if it was already under way
        """
        if not self._registry.state.begin():
            return False

        logger.info(f"Shutting down proxy server ({reason})...")
        logger.info(f"Active connections: {len(self._registry)}")

        for delay, action in ((self._grace_period, self._on_grace_expired),
                              (self._hard_timeout, self._on_hard_timeout)):
            timer = threading.Timer(delay, action)
            timer.daemon = True
            self._timers.append(timer)
            timer.start()

        self._server.shutdown()
        return True

    def _on_grace_expired(self) -> None:
        remaining = len(self._registry)
        if remaining:
            logger.info(f"Force closing {remaining} remaining connections...")
            self._registry.destroy_all()
        logger.info("Proxy server fully shut down")
        self._done.set()

    def _on_hard_timeout(self) -> None:
        logger.warning("Forcing shutdown...")
        self._registry.destroy_all()
        self._done.set()
        self._exit_func(0)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the grace phase (or the hard timer) has completed."""
        return self._done.wait(timeout)

    def cancel(self) -> None:
        for timer in self._timers:
            timer.cancel()

    def install_signal_handlers(self,
                                signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Route termination signals to shutdown(). Must run on the main thread."""
        for signum in signals:
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        logger.info(f"Received {name}")
        self.shutdown(name)

    def install_exception_hooks(self) -> None:
        """Treat uncaught exceptions, in any thread, as fatal shutdown triggers."""
        previous_thread_hook = threading.excepthook

        def thread_hook(args):
            if issubclass(args.exc_type, SystemExit):
                previous_thread_hook(args)
                return
            self.handle_fatal(args.exc_type, args.exc_value, args.exc_traceback,
                              f"thread {args.thread.name if args.thread else '?'}")

        def main_hook(exc_type, exc_value, exc_traceback):
            self.handle_fatal(exc_type, exc_value, exc_traceback, "main thread")

        threading.excepthook = thread_hook
        sys.excepthook = main_hook

    def handle_fatal(self, exc_type, exc_value, exc_traceback, where: str = "") -> None:
        logger.error(f"Uncaught exception in {where}: {exc_value!r}",
                     exc_info=(exc_type, exc_value, exc_traceback))
        self.shutdown("fatal error")
