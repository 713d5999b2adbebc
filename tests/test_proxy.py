import unittest
import threading
import socket
import sys
import os
from unittest import mock

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aclproxy.config import ProxyConfig
from aclproxy.server import ProxyServer
from aclproxy.shutdown import ShutdownCoordinator


class TestProxyServer(unittest.TestCase):
    """Test cases for the ProxyServer listener."""

    def setUp(self):
        """Set up test environment before each test."""
        # Arrange
        self.proxy = ProxyServer(host="127.0.0.1", port=0, allowed_ips=["127.0.0.1"])

        # Start proxy in separate thread
        self.proxy_thread = threading.Thread(target=self.proxy.start)
        self.proxy_thread.daemon = True
        self.proxy_thread.start()
        self.assertTrue(self.proxy.wait_until_ready(timeout=5))

    def test_proxy_initialization(self):
        """Test proxy initialization with custom configuration."""
        # Arrange and Act
        custom_proxy = ProxyServer(
            host="127.0.0.1",
            port=8081,
            allowed_ips=["10.0.0.0/24", "192.168.1.*"]
        )
        self.addCleanup(custom_proxy.server_socket.close)

        # Assert
        self.assertEqual(custom_proxy.host, "127.0.0.1")
        self.assertEqual(custom_proxy.port, 8081)
        self.assertEqual(custom_proxy.acl.describe(), ["10.0.0.0/24", "192.168.1.*"])
        self.assertEqual(len(custom_proxy.registry), 0)

    def test_from_config(self):
        config = ProxyConfig(overrides={"port": "9090", "allowed_ips": "1.2.3.4"})

        custom_proxy = ProxyServer.from_config(config)
        self.addCleanup(custom_proxy.server_socket.close)

        self.assertEqual(custom_proxy.port, 9090)
        self.assertEqual(custom_proxy.acl.describe(), ["1.2.3.4"])

    def test_bound_port_is_reported(self):
        self.assertNotEqual(self.proxy.port, 0)

    def test_listener_closed_after_coordinated_shutdown(self):
        # Arrange
        coordinator = ShutdownCoordinator(
            self.proxy, self.proxy.registry,
            grace_period=0.05, hard_timeout=5, exit_func=mock.Mock())
        self.addCleanup(coordinator.cancel)

        # Act
        coordinator.shutdown()
        self.proxy_thread.join(timeout=5)

        # Assert
        self.assertFalse(self.proxy_thread.is_alive())
        with self.assertRaises(OSError):
            socket.create_connection(("127.0.0.1", self.proxy.port), timeout=1)

    def tearDown(self):
        """Clean up after each test."""
        # First shutdown the proxy gracefully
        self.proxy.shutdown()
        # Wait for the proxy thread to finish
        self.proxy_thread.join(timeout=1)


if __name__ == '__main__':
    unittest.main()
