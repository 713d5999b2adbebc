import unittest
import signal
import socket
import time
import sys
import os
from unittest import mock

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aclproxy.registry import ConnectionRegistry
from aclproxy.shutdown import ShutdownCoordinator


class TestShutdownCoordinator(unittest.TestCase):
    """Test cases for graceful-then-forced shutdown."""

    def setUp(self):
        self.server = mock.Mock()
        self.registry = ConnectionRegistry()
        self.exit_func = mock.Mock()
        self.coordinator = ShutdownCoordinator(
            self.server, self.registry,
            grace_period=0.05, hard_timeout=0.3, exit_func=self.exit_func
        )
        self.local, self.remote = socket.socketpair()

    def tearDown(self):
        self.coordinator.cancel()
        self.local.close()
        self.remote.close()

    def test_shutdown_stops_accepting(self):
        # Act
        started = self.coordinator.shutdown()

        # Assert
        self.assertTrue(started)
        self.assertTrue(self.coordinator.is_shutting_down)
        self.server.shutdown.assert_called_once_with()

    def test_shutdown_is_idempotent(self):
        # Act
        first = self.coordinator.shutdown()
        second = self.coordinator.shutdown()

        # Assert
        self.assertTrue(first)
        self.assertFalse(second)
        self.server.shutdown.assert_called_once_with()
        self.assertEqual(len(self.coordinator.timers), 2)

    def test_grace_timer_destroys_lingering_connections(self):
        # Arrange
        self.registry.track(self.local, "HTTP-client")

        # Act
        self.coordinator.shutdown()
        completed = self.coordinator.wait(timeout=2)

        # Assert
        self.assertTrue(completed)
        self.assertEqual(len(self.registry), 0)
        self.assertEqual(self.local.fileno(), -1)
        self.exit_func.assert_not_called()

    def test_new_connections_refused_after_shutdown(self):
        self.coordinator.shutdown()

        connection_id = self.registry.track(self.local, "HTTP-client")

        self.assertIsNone(connection_id)
        self.assertEqual(self.local.fileno(), -1)

    def test_hard_timer_exits_once(self):
        # Act
        self.coordinator.shutdown()
        self.coordinator.shutdown()
        time.sleep(0.6)

        # Assert
        self.exit_func.assert_called_once_with(0)

    def test_signal_handler_triggers_shutdown(self):
        self.coordinator._handle_signal(signal.SIGTERM, None)

        self.assertTrue(self.coordinator.is_shutting_down)
        self.server.shutdown.assert_called_once_with()

    def test_install_signal_handlers(self):
        with mock.patch('aclproxy.shutdown.signal.signal') as install:
            self.coordinator.install_signal_handlers()

        installed = [c.args[0] for c in install.call_args_list]
        self.assertEqual(installed, [signal.SIGINT, signal.SIGTERM])

    def test_fatal_error_triggers_shutdown(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            with self.assertLogs('aclproxy.shutdown', level='ERROR'):
                self.coordinator.handle_fatal(*sys.exc_info(), where="test")

        self.assertTrue(self.coordinator.is_shutting_down)


if __name__ == '__main__':
    unittest.main()
