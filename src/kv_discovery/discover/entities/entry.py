from __future__ import annotations

import logging
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict

from kv_discovery.exceptions import InvalidEntryError

logger = logging.getLogger(__name__)

__all__ = [
    "Entries",
    "Entry",
    "contains_entry",
    "create_entries",
    "diff_entries",
    "entries_equal",
    "join_host_port",
    "split_host_port",
]


def split_host_port(address: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into its two parts.

    Raises:
        InvalidEntryError: if the address has no port or too many colons.
    """
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise InvalidEntryError(message=f"missing ']' in address {address!r}")
        host = address[1:end]
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise InvalidEntryError(message=f"missing port in address {address!r}")
        port = rest[1:]
        if ":" in port:
            raise InvalidEntryError(message=f"too many colons in address {address!r}")
        return host, port

    host, sep, port = address.rpartition(":")
    if not sep:
        raise InvalidEntryError(message=f"missing port in address {address!r}")
    if ":" in host:
        raise InvalidEntryError(message=f"too many colons in address {address!r}")
    if "[" in host or "]" in host:
        raise InvalidEntryError(message=f"unexpected bracket in address {address!r}")
    return host, port


def join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class Entry(BaseModel):
    """A single cluster member, decoded from a ``host:port`` value."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: str

    @classmethod
    def parse(cls, address: str) -> Entry:
        """Build an entry from a ``host:port`` string."""
        host, port = split_host_port(address.strip())
        return cls(host=host, port=port)

    def __str__(self) -> str:
        return join_host_port(self.host, self.port)


Entries = list[Entry]


def create_entries(addresses: Iterable[str]) -> Entries:
    """Decode addresses into entries, skipping blanks and malformed values."""
    entries: Entries = []
    for address in addresses:
        if not address or not address.strip():
            continue
        try:
            entries.append(Entry.parse(address))
        except InvalidEntryError as exc:
            logger.debug("Skipping entry %r: %s", address, exc)
    return entries


def entries_equal(left: Entries, right: Entries) -> bool:
    """Compare two snapshots ignoring order."""
    if len(left) != len(right):
        return False
    return all(contains_entry(right, entry) for entry in left)


def contains_entry(entries: Entries, entry: Entry) -> bool:
    return any(candidate == entry for candidate in entries)


def diff_entries(current: Entries, updated: Entries) -> tuple[Entries, Entries]:
    """Return ``(added, removed)`` between two snapshots."""
    added = [entry for entry in updated if not contains_entry(current, entry)]
    removed = [entry for entry in current if not contains_entry(updated, entry)]
    return added, removed
