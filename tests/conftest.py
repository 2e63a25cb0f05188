from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from kv_discovery.config import DiscoveryConfig
from kv_discovery.discover import KVDiscovery, KVPair, KVStore, KVStoreFactory, Stream, WriteOptions
from kv_discovery.discover.store import InMemoryKVStore
from kv_discovery.observability import LogContext
from kv_discovery.resilience import BackoffPolicy


class FakeKVStore(KVStore):
    """Scripted store for driving the discovery loops.

    Each ``*_results`` list is consumed front to back. An exception item is
    raised, any other item is returned. Once a script is empty the call
    falls back to its default behaviour.
    """

    def __init__(self, endpoints: list[str], options: Any = None) -> None:
        super().__init__(endpoints, options)
        self.exists_results: list[Any] = []
        self.put_results: list[Any] = []
        self.watch_results: list[Any] = []
        self.exists_calls: list[str] = []
        self.writes: list[tuple[str, bytes, WriteOptions | None]] = []
        self.watch_calls: list[str] = []
        self.watch_streams: list[Stream[list[KVPair]]] = []
        self.closed = False

    @staticmethod
    def _next(script: list[Any], default: Any) -> Any:
        if not script:
            return default
        item = script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def exists(self, key: str) -> bool:
        self.exists_calls.append(key)
        return self._next(self.exists_results, True)

    async def get(self, key: str) -> KVPair:
        raise NotImplementedError

    async def list(self, directory: str) -> list[KVPair]:
        return []

    async def put(self, key: str, value: bytes, options: WriteOptions | None = None) -> None:
        self.writes.append((key, value, options))
        self._next(self.put_results, None)

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def watch_tree(self, directory: str, stop: asyncio.Event) -> Stream[list[KVPair]]:
        self.watch_calls.append(directory)
        stream = self._next(self.watch_results, None) or Stream(maxsize=4)
        self.watch_streams.append(stream)
        return stream

    async def close(self) -> None:
        self.closed = True


KVStoreFactory.register_store("fake", FakeKVStore)


def pairs(*addresses: str, prefix: str = "path") -> list[KVPair]:
    return [KVPair(key=f"{prefix}/{address}", value=address.encode()) for address in addresses]


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until ``predicate`` holds, yielding to the loop in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def receive(stream: Stream[Any], timeout: float = 2.0) -> Any:
    return await asyncio.wait_for(stream.receive(), timeout)


@pytest.fixture(autouse=True)
def clear_log_context() -> Iterator[None]:
    """Reset LogContext between tests."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture(autouse=True)
def reset_memory_store() -> Iterator[None]:
    InMemoryKVStore.reset()
    yield
    InMemoryKVStore.reset()


@pytest.fixture()
def fast_config() -> DiscoveryConfig:
    """Config with retry delays short enough for tests."""
    return DiscoveryConfig(backend="fake", retry=BackoffPolicy(initial_delay_ms=10, max_delay_ms=50))


@pytest.fixture()
def fake_discovery(fast_config: DiscoveryConfig) -> KVDiscovery:
    discovery = KVDiscovery("fake", config=fast_config)
    discovery.initialize("127.0.0.1/path", heartbeat=10, ttl=30)
    return discovery


@pytest.fixture()
def fake_store(fake_discovery: KVDiscovery) -> FakeKVStore:
    store = fake_discovery.store
    assert isinstance(store, FakeKVStore)
    return store
