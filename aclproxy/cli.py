import argparse
import logging
import sys
from typing import List, Optional

from .config import ProxyConfig
from .registry import ConnectionRegistry
from .server import ProxyServer
from .shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aclproxy",
        description="Forward HTTP/HTTPS proxy restricted by client IP."
    )
    parser.add_argument("-c", "--config", default="config.json",
                        help="JSON configuration file (default: %(default)s)")
    parser.add_argument("-p", "--port", help="listening port, overrides the config file")
    parser.add_argument("--allowed-ips",
                        help="comma-separated allow-list, overrides the config file; "
                             "pass an empty string to allow every client")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    config = ProxyConfig(args.config, overrides={
        "port": args.port,
        "allowed_ips": args.allowed_ips
    })
    registry = ConnectionRegistry()
    server = ProxyServer.from_config(config, registry)
    coordinator = ShutdownCoordinator(
        server, registry,
        grace_period=config.grace_period,
        hard_timeout=config.hard_timeout
    )
    coordinator.install_signal_handlers()
    coordinator.install_exception_hooks()

    try:
        server.start()
    except OSError as e:
        if not coordinator.is_shutting_down:
            logger.error(f"Cannot listen on {config.host}:{config.port}: {e}")
            return 1
    except Exception:
        coordinator.handle_fatal(*sys.exc_info(), where="main thread")

    # start() only returns once shutdown has stopped the listener
    coordinator.wait()
    return 0
