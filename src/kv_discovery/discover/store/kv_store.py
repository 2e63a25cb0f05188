from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from kv_discovery.discover.stream import Stream


@dataclass(frozen=True, slots=True)
class KVPair:
    """A key and its raw value as returned by a store."""

    key: str
    value: bytes
    last_index: int = 0


@dataclass(frozen=True, slots=True)
class WriteOptions:
    """Options for ``KVStore.put``.

    Attributes:
        is_dir: Write the key as a directory placeholder.
        ttl: Seconds after which the key expires unless rewritten.
    """

    is_dir: bool = False
    ttl: float | None = None


@dataclass(frozen=True, slots=True)
class StoreOptions:
    """Connection options handed to store constructors."""

    connection_timeout: float = 10.0
    scheme: str = "http"


def normalize_key(key: str) -> str:
    """Strip leading and trailing slashes from a key."""
    return key.strip("/")


class KVStore(ABC):
    """Abstract base class for a key-value store backend."""

    def __init__(self, endpoints: list[str], options: StoreOptions | None = None) -> None:
        self.endpoints = list(endpoints)
        self.options = options or StoreOptions()

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if ``key`` (or anything below it) exists."""

    @abstractmethod
    async def get(self, key: str) -> KVPair:
        """Return the pair stored at ``key``.

        Raises:
            KeyNotFoundError: if the key does not exist.
        """

    @abstractmethod
    async def list(self, directory: str) -> list[KVPair]:
        """Return all pairs below ``directory``, sorted by key."""

    @abstractmethod
    async def put(self, key: str, value: bytes, options: WriteOptions | None = None) -> None:
        """Write ``value`` at ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""

    @abstractmethod
    async def watch_tree(self, directory: str, stop: asyncio.Event) -> Stream[list[KVPair]]:
        """Watch every key below ``directory``.

        The returned stream receives the full listing once immediately and
        again after every change. It is closed when the watch ends, either
        because ``stop`` was set or because the backend dropped it.

        Raises:
            StoreError: if the watch cannot be established.
        """

    async def close(self) -> None:
        """Release connections held by the store."""
