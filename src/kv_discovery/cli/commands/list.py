"""List command for kv-discovery."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys

from kv_discovery.cli.commands._shared import EXIT_ERROR, EXIT_SUCCESS, add_url_argument, open_discovery
from kv_discovery.discover import KVDiscovery
from kv_discovery.exceptions import StoreError

__all__ = ["register_parser", "run"]


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "list",
        help="List the current members of a namespace.",
    )
    parser.set_defaults(handler=run)
    add_url_argument(parser)
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text).",
    )


def run(args: argparse.Namespace) -> int:
    discovery = open_discovery(args)
    if discovery is None:
        return EXIT_ERROR
    return asyncio.run(_list(discovery, args.format))


async def _list(discovery: KVDiscovery, output_format: str) -> int:
    try:
        entries = await discovery.fetch()
    except StoreError as e:
        print(f"Error: Failed to list members: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        await discovery.close()

    if output_format == "json":
        print(json.dumps([entry.model_dump() for entry in entries], indent=2))
    elif entries:
        for entry in entries:
            print(entry)
    else:
        print(f"No members registered under '{discovery.path}'")
    return EXIT_SUCCESS
