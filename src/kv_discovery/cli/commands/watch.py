"""Watch command for kv-discovery.

Prints every membership snapshot published for a namespace.
"""
from __future__ import annotations

import argparse
import asyncio
import json

from kv_discovery.cli.commands._shared import (
    EXIT_ERROR,
    EXIT_SUCCESS,
    add_url_argument,
    log_errors,
    open_discovery,
    run_until_interrupted,
)
from kv_discovery.discover import Entries, KVDiscovery

__all__ = ["format_snapshot", "register_parser", "run"]


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the watch command subparser.

    Args:
        subparsers: The argparse subparsers action to add to.
    """
    parser = subparsers.add_parser(
        "watch",
        help="Print membership snapshots as they change.",
        description="Watch a namespace and print the member list on every change.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kv-discovery watch consul://127.0.0.1:8500/prod
  kv-discovery watch etcd://10.0.0.1:2379,10.0.0.2:2379 --format json
  kv-discovery --config kv_discovery.yaml watch
        """,
    )
    parser.set_defaults(handler=run)
    add_url_argument(parser)
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text).",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=0,
        help="Exit after this many snapshots (default: run until interrupted).",
    )


def run(args: argparse.Namespace) -> int:
    """Execute the watch command.

    Returns:
        Exit code (0=success, 1=error).
    """
    discovery = open_discovery(args)
    if discovery is None:
        return EXIT_ERROR
    return run_until_interrupted(_watch(discovery, args.format, args.count))


async def _watch(discovery: KVDiscovery, output_format: str, count: int) -> int:
    stop = asyncio.Event()
    snapshots, errors = discovery.watch(stop)
    reporter = asyncio.create_task(log_errors(errors))
    seen = 0
    try:
        async for entries in snapshots:
            print(format_snapshot(entries, output_format), flush=True)
            seen += 1
            if count and seen >= count:
                break
    finally:
        stop.set()
        await reporter
        await discovery.close()
    return EXIT_SUCCESS


def format_snapshot(entries: Entries, output_format: str) -> str:
    addresses = [str(entry) for entry in entries]
    if output_format == "json":
        return json.dumps(addresses)
    return " ".join(addresses) if addresses else "(no members)"
