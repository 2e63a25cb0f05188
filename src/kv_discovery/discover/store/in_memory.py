from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from kv_discovery.discover.store.kv_store import KVPair, KVStore, StoreOptions, WriteOptions, normalize_key
from kv_discovery.discover.store.store_factory import kv_store
from kv_discovery.discover.stream import STOPPED, Stream, race_stop
from kv_discovery.exceptions import KeyNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class _Record:
    value: bytes
    index: int
    is_dir: bool = False


@dataclass(eq=False)
class _Watch:
    directory: str
    changed: asyncio.Event = field(default_factory=asyncio.Event)
    stream: Stream[list[KVPair]] | None = None
    task: asyncio.Task | None = None


class _MemoryBackend:
    """State shared by every in-memory store opened on the same endpoints."""

    def __init__(self) -> None:
        self.records: dict[str, _Record] = {}
        self.index = 0
        self.watches: set[_Watch] = set()

    def next_index(self) -> int:
        self.index += 1
        return self.index

    def notify(self, key: str) -> None:
        for watch in list(self.watches):
            if key == watch.directory or key.startswith(watch.directory + "/"):
                watch.changed.set()


@kv_store(name="memory")
class InMemoryKVStore(KVStore):
    """In-process store with TTL expiry and subtree watches.

    Stores opened with the same endpoint list share their data, so a watcher
    and a registrar in one process see each other.
    """

    _backends: dict[tuple[str, ...], _MemoryBackend] = {}

    def __init__(self, endpoints: list[str], options: StoreOptions | None = None) -> None:
        super().__init__(endpoints, options)
        self._backend = self._backends.setdefault(tuple(self.endpoints), _MemoryBackend())
        self._watches: set[_Watch] = set()

    @classmethod
    def reset(cls) -> None:
        """Forget all shared in-memory data."""
        cls._backends.clear()

    async def exists(self, key: str) -> bool:
        key = normalize_key(key)
        return any(k == key or k.startswith(key + "/") for k in self._backend.records)

    async def get(self, key: str) -> KVPair:
        key = normalize_key(key)
        record = self._backend.records.get(key)
        if record is None:
            raise KeyNotFoundError(message=f"Key not found: {key}")
        return KVPair(key=key, value=record.value, last_index=record.index)

    async def list(self, directory: str) -> list[KVPair]:
        return self._list_now(normalize_key(directory))

    async def put(self, key: str, value: bytes, options: WriteOptions | None = None) -> None:
        key = normalize_key(key)
        options = options or WriteOptions()
        index = self._backend.next_index()
        self._backend.records[key] = _Record(value=bytes(value), index=index, is_dir=options.is_dir)
        if options.ttl:
            asyncio.get_running_loop().call_later(options.ttl, self._expire, key, index)
        self._backend.notify(key)

    async def delete(self, key: str) -> None:
        key = normalize_key(key)
        if self._backend.records.pop(key, None) is not None:
            self._backend.notify(key)

    async def watch_tree(self, directory: str, stop: asyncio.Event) -> Stream[list[KVPair]]:
        directory = normalize_key(directory)
        stream: Stream[list[KVPair]] = Stream(maxsize=1)
        stream.offer(self._list_now(directory))
        watch = _Watch(directory=directory, stream=stream)
        self._backend.watches.add(watch)
        self._watches.add(watch)
        watch.task = asyncio.create_task(self._follow(watch, stream, stop))
        return stream

    def drop_watches(self) -> None:
        """End every watch opened through this store, as a backend restart would."""
        for watch in list(self._watches):
            if watch.task is not None:
                watch.task.cancel()
            # a task cancelled before its first step never reaches its finally
            self._release(watch)

    async def close(self) -> None:
        tasks = [w.task for w in self._watches if w.task is not None]
        self.drop_watches()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _follow(self, watch: _Watch, stream: Stream[list[KVPair]], stop: asyncio.Event) -> None:
        try:
            while True:
                if await race_stop(watch.changed.wait(), stop) is STOPPED:
                    return
                watch.changed.clear()
                listing = self._list_now(watch.directory)
                if await race_stop(stream.send(listing), stop) is STOPPED:
                    return
        finally:
            self._release(watch)

    def _release(self, watch: _Watch) -> None:
        self._backend.watches.discard(watch)
        self._watches.discard(watch)
        if watch.stream is not None:
            watch.stream.close()

    def _list_now(self, directory: str) -> list[KVPair]:
        prefix = directory + "/"
        return [
            KVPair(key=key, value=record.value, last_index=record.index)
            for key, record in sorted(self._backend.records.items())
            if key.startswith(prefix) and not record.is_dir
        ]

    def _expire(self, key: str, index: int) -> None:
        record = self._backend.records.get(key)
        # a rewrite bumps the index and owns its own timer
        if record is None or record.index != index:
            return
        del self._backend.records[key]
        logger.debug("Key %s expired", key)
        self._backend.notify(key)
