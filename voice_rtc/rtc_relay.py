"""Entry point for the voice-rtc relay CLI."""

import asyncio
import logging

from voice_rtc.config import get_config
from voice_rtc.relay.server import Relay


def run_relay(host=None, port=None, path=None):
    """Create a Relay and serve it until interrupted.

    Args:
        host: Interface to bind. CLI option overrides config file.
        port: Port to listen on. CLI option overrides config file.
        path: Only accept connections on this request path.
    """
    config = get_config()

    relay = Relay(path=path if path is not None else config.relay_path)

    try:
        asyncio.run(
            relay.serve(
                host or config.relay_host,
                port or config.relay_port,
            )
        )
    except KeyboardInterrupt:
        logging.info("Relay interrupted by user. Shutting down...")
    finally:
        logging.info("Relay exiting...")
