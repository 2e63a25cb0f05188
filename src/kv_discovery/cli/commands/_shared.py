"""Helpers shared by the kv-discovery commands."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Final

from kv_discovery.config import ConfigError, DiscoveryConfig, load_config
from kv_discovery.discover import KVDiscovery, Stream
from kv_discovery.exceptions import ConnectionInitError

EXIT_SUCCESS: Final = 0
EXIT_ERROR: Final = 1

logger = logging.getLogger(__name__)


def add_url_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "url",
        nargs="?",
        default=None,
        help="Store URL '<backend>://host[:port][,host...][/prefix]' (default: 'uri' from the config file).",
    )


def open_discovery(args: argparse.Namespace) -> KVDiscovery | None:
    """Build an initialized client from the URL argument and config file.

    Prints the failure and returns None when the client cannot be built.
    """
    try:
        config = load_config(getattr(args, "config", None))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None

    url = args.url or config.uri
    if not url:
        print("Error: No store URL given and none configured", file=sys.stderr)
        return None

    try:
        return _initialize(url, config)
    except ConnectionInitError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None


def _initialize(url: str, config: DiscoveryConfig) -> KVDiscovery:
    if "://" in url:
        return KVDiscovery.from_url(url, config=config)
    discovery = KVDiscovery(config.backend, config=config)
    discovery.initialize(url, config.heartbeat_seconds, config.ttl_seconds)
    return discovery


async def log_errors(errors: Stream[Exception]) -> None:
    """Log every error reported on ``errors`` until it is closed."""
    async for error in errors:
        logger.warning("%s", error)


def run_until_interrupted(coro) -> int:
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        return EXIT_SUCCESS
