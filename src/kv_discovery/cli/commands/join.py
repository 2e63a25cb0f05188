"""Join command for kv-discovery.

Registers an address in a namespace and keeps it alive with heartbeats.
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from kv_discovery.cli.commands._shared import (
    EXIT_ERROR,
    EXIT_SUCCESS,
    add_url_argument,
    log_errors,
    open_discovery,
    run_until_interrupted,
)
from kv_discovery.discover import Entry, KVDiscovery
from kv_discovery.exceptions import InvalidEntryError, RegistrationError

__all__ = ["register_parser", "run"]


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the join command subparser.

    Args:
        subparsers: The argparse subparsers action to add to.
    """
    parser = subparsers.add_parser(
        "join",
        help="Register this node and keep its entry alive.",
        description="Write host:port under the namespace every heartbeat with a TTL.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kv-discovery join consul://127.0.0.1:8500/prod --advertise 10.0.0.5:2375
  kv-discovery join etcd://10.0.0.1:2379 --advertise 10.0.0.5:2375 --heartbeat 20 --ttl 60
  kv-discovery join memory://local --advertise 127.0.0.1:2375 --once
        """,
    )
    parser.set_defaults(handler=run)
    add_url_argument(parser)
    parser.add_argument(
        "--advertise",
        required=True,
        metavar="HOST:PORT",
        help="Address to register.",
    )
    parser.add_argument(
        "--heartbeat",
        type=float,
        default=None,
        help="Seconds between writes (default: configured heartbeat).",
    )
    parser.add_argument(
        "--ttl",
        type=float,
        default=None,
        help="Seconds before the entry expires (default: configured TTL).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Write the entry a single time and exit.",
    )


def run(args: argparse.Namespace) -> int:
    """Execute the join command.

    Returns:
        Exit code (0=success, 1=error).
    """
    try:
        Entry.parse(args.advertise)
    except InvalidEntryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    discovery = open_discovery(args)
    if discovery is None:
        return EXIT_ERROR
    if args.once:
        return asyncio.run(_join_once(discovery, args.advertise, args.ttl))
    return run_until_interrupted(_join(discovery, args.advertise, args.heartbeat, args.ttl))


async def _join_once(discovery: KVDiscovery, address: str, ttl: float | None) -> int:
    try:
        await discovery.register_once(address, ttl=ttl)
    except RegistrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        await discovery.close()
    print(f"Registered {address} under {discovery.path}")
    return EXIT_SUCCESS


async def _join(discovery: KVDiscovery, address: str, heartbeat: float | None, ttl: float | None) -> int:
    stop = asyncio.Event()
    errors = discovery.register(address, stop, refresh_interval=heartbeat, ttl=ttl)
    try:
        await log_errors(errors)
    finally:
        stop.set()
        await discovery.close()
    return EXIT_SUCCESS
