"""Membership discovery over a key-value store namespace.

Members write their address under ``<prefix>/<discovery path>/<address>``.
``KVDiscovery.watch`` tails that directory and republishes the decoded member
list every time it changes; ``KVDiscovery.register`` keeps this process's own
entry alive with a TTL.

Both loops run as background tasks and talk to the caller through two kinds of
streams:

- snapshot streams block the loop until the consumer takes the snapshot;
- error streams never block, and errors are dropped when nobody reads them.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Coroutine
from typing import Any

from kv_discovery.config.models import DiscoveryConfig
from kv_discovery.discover.entities import Entries, Entry
from kv_discovery.discover.store.kv_store import KVPair, KVStore, StoreOptions, WriteOptions
from kv_discovery.discover.store.store_factory import KVStoreFactory
from kv_discovery.discover.stream import STOPPED, Stream, race_stop, sleep_or_stop
from kv_discovery.exceptions import (
    BootstrapError,
    ConnectionInitError,
    InvalidEntryError,
    RegistrationError,
    SubscribeError,
)
from kv_discovery.observability.logging import LogContext
from kv_discovery.utils.constant import DEFAULT_SNAPSHOT_BUFFER, DISCOVERY_PATH

__all__ = ["KVDiscovery", "decode_entries", "parse_connection_string"]

logger = logging.getLogger(__name__)


def parse_connection_string(uris: str, discovery_path: str = DISCOVERY_PATH) -> tuple[list[str], str]:
    """Split ``endpoint[,endpoint...][/prefix]`` into endpoints and a namespace path.

    The namespace path is ``<prefix>/<discovery_path>``, or just
    ``discovery_path`` when no prefix is given. Endpoint order and duplicates
    are preserved.
    """
    addresses, _, prefix = uris.partition("/")
    endpoints = addresses.split(",")
    discovery_path = discovery_path.strip("/")
    prefix = prefix.strip("/")
    if prefix:
        path = posixpath.normpath(posixpath.join(prefix, discovery_path))
    else:
        path = discovery_path
    return endpoints, path


def decode_entries(pairs: list[KVPair]) -> Entries:
    """Decode a store listing into entries ordered by key.

    Values that are not valid ``host:port`` strings are skipped.
    """
    entries: Entries = []
    for pair in sorted(pairs, key=lambda p: p.key):
        try:
            entries.append(Entry.parse(pair.value.decode("utf-8")))
        except (InvalidEntryError, UnicodeDecodeError) as exc:
            logger.debug("Skipping %s: %s", pair.key, exc)
    return entries


class KVDiscovery:
    """Discovery client bound to one store backend and one namespace.

    Args:
        backend: Name of a registered store (``memory``, ``consul``, ``etcd``...).
        discovery_path: Sub-path appended to every namespace prefix.
        config: Client settings; defaults are used when omitted.
    """

    def __init__(
        self,
        backend: str,
        *,
        discovery_path: str | None = None,
        config: DiscoveryConfig | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or DiscoveryConfig(backend=backend)
        self.discovery_path = (discovery_path or self.config.discovery_path).strip("/")
        self.endpoints: list[str] = []
        self.path = ""
        self.heartbeat = self.config.effective_heartbeat
        self.ttl = self.config.effective_ttl
        self._store: KVStore | None = None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_url(cls, url: str, *, config: DiscoveryConfig | None = None, **store_kwargs: Any) -> KVDiscovery:
        """Create and initialize a client from ``<backend>://<uris>``."""
        backend, sep, uris = url.partition("://")
        if not sep or not backend:
            raise ConnectionInitError(message=f"Missing store backend scheme in {url!r}")
        config = config or DiscoveryConfig(backend=backend)
        discovery = cls(backend, config=config)
        discovery.initialize(uris, config.heartbeat_seconds, config.ttl_seconds, **store_kwargs)
        return discovery

    @property
    def store(self) -> KVStore:
        if self._store is None:
            raise RuntimeError("KVDiscovery.initialize() has not been called")
        return self._store

    def initialize(self, uris: str, heartbeat: float = 0, ttl: float = 0, **store_kwargs: Any) -> None:
        """Parse ``uris`` and open the store.

        ``heartbeat`` and ``ttl`` are in seconds; 0 keeps the configured
        defaults. Extra keyword arguments go to the store constructor.

        Calling it again with the same endpoints keeps the open store. Other
        endpoints or store arguments require :meth:`close` first.

        Raises:
            ConnectionInitError: if the store cannot be created, or a store
                for other endpoints is still open.
        """
        endpoints, path = parse_connection_string(uris, self.discovery_path)
        reuse = False
        if self._store is not None:
            if endpoints != self.endpoints or store_kwargs:
                raise ConnectionInitError(
                    message=f"{self.backend} discovery is already initialized on "
                    f"{','.join(self.endpoints)}; close() it first"
                )
            reuse = True
        self.endpoints = endpoints
        self.path = path
        self.heartbeat = heartbeat or self.config.effective_heartbeat
        self.ttl = ttl or self.config.effective_ttl
        if not reuse:
            options = StoreOptions(connection_timeout=self.config.connection_timeout_seconds)
            self._store = KVStoreFactory.from_kv_store(self.backend, endpoints, options, **store_kwargs)
        logger.info("Initialized %s discovery on %s at %s", self.backend, ",".join(endpoints), path)

    def watch(self, stop: asyncio.Event) -> tuple[Stream[Entries], Stream[Exception]]:
        """Start watching the namespace.

        Returns ``(snapshots, errors)`` immediately. Both streams are closed
        once ``stop`` is set.
        """
        store = self.store
        snapshots: Stream[Entries] = Stream(maxsize=DEFAULT_SNAPSHOT_BUFFER)
        errors: Stream[Exception] = Stream(maxsize=self.config.error_buffer)
        self._spawn(self._watch_loop(store, stop, snapshots, errors), f"kv-discovery-watch:{self.path}")
        return snapshots, errors

    async def fetch(self) -> Entries:
        """Return the current members without starting a watch."""
        return decode_entries(await self.store.list(self.path))

    def register(
        self,
        address: str,
        stop: asyncio.Event,
        *,
        refresh_interval: float | None = None,
        ttl: float | None = None,
    ) -> Stream[Exception]:
        """Keep ``address`` registered until ``stop`` is set.

        The entry is written immediately and then every ``refresh_interval``
        seconds with the given TTL. Failed writes are reported on the returned
        stream and retried on the next tick.

        Raises:
            InvalidEntryError: if ``address`` is not ``host:port``.
        """
        Entry.parse(address)
        store = self.store
        interval = refresh_interval or self.heartbeat
        ttl = ttl or self.ttl
        errors: Stream[Exception] = Stream(maxsize=self.config.error_buffer)
        self._spawn(self._register_loop(store, address, interval, ttl, stop, errors), f"kv-discovery-register:{address}")
        return errors

    async def register_once(self, address: str, ttl: float | None = None) -> None:
        """Write this member's entry a single time.

        Raises:
            RegistrationError: if the store rejects the write.
        """
        await self._write_entry(self.store, address, ttl or self.ttl)

    async def close(self) -> None:
        """Cancel running loops and release the store."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._store is not None:
            store, self._store = self._store, None
            await store.close()

    async def _watch_loop(
        self,
        store: KVStore,
        stop: asyncio.Event,
        snapshots: Stream[Entries],
        errors: Stream[Exception],
    ) -> None:
        LogContext.bind(backend=self.backend, namespace=self.path)
        failures = 0
        try:
            while not stop.is_set():
                if await race_stop(self._bootstrap(store, errors), stop) is STOPPED:
                    break

                try:
                    watch_stream = await race_stop(store.watch_tree(self.path, stop), stop)
                except Exception as exc:
                    failures += 1
                    logger.warning("Failed to watch %s (attempt %d): %s", self.path, failures, exc)
                    errors.offer(SubscribeError(message=f"Failed to watch {self.path}", cause=exc))
                    if not await sleep_or_stop(self.config.retry.compute_delay(failures), stop):
                        break
                    continue
                if watch_stream is STOPPED:
                    break

                batches = await self._consume(watch_stream, snapshots, stop)
                if batches is STOPPED:
                    break
                failures = 1 if batches else failures + 1
                logger.info("Watch on %s was dropped, resubscribing", self.path)
                if not await sleep_or_stop(self.config.retry.compute_delay(failures), stop):
                    break
        finally:
            snapshots.close()
            errors.close()
            logger.debug("Watch loop on %s stopped", self.path)

    async def _bootstrap(self, store: KVStore, errors: Stream[Exception]) -> None:
        # Some backends refuse to watch a directory that does not exist yet.
        try:
            exists = await store.exists(self.path)
        except Exception as exc:
            logger.warning("Existence check for %s failed: %s", self.path, exc)
            errors.offer(BootstrapError(message=f"Failed to check {self.path}", cause=exc))
            exists = False
        if exists:
            return
        try:
            await store.put(self.path, b"", WriteOptions(is_dir=True))
        except Exception as exc:
            logger.warning("Failed to create %s: %s", self.path, exc)
            errors.offer(BootstrapError(message=f"Failed to create {self.path}", cause=exc))

    async def _consume(
        self,
        watch_stream: Stream[list[KVPair]],
        snapshots: Stream[Entries],
        stop: asyncio.Event,
    ) -> Any:
        """Forward batches as snapshots until the watch ends.

        Returns the number of batches forwarded, or ``STOPPED``.
        """
        batches = 0
        while True:
            pairs = await race_stop(watch_stream.receive(), stop)
            if pairs is STOPPED:
                return STOPPED
            if pairs is None:
                return STOPPED if stop.is_set() else batches
            batches += 1
            if await race_stop(snapshots.send(decode_entries(pairs)), stop) is STOPPED:
                return STOPPED

    async def _register_loop(
        self,
        store: KVStore,
        address: str,
        interval: float,
        ttl: float,
        stop: asyncio.Event,
        errors: Stream[Exception],
    ) -> None:
        LogContext.bind(backend=self.backend, namespace=self.path, member=address)
        try:
            while not stop.is_set():
                try:
                    if await race_stop(self._write_entry(store, address, ttl), stop) is STOPPED:
                        break
                    logger.debug("Heartbeat for %s written", address)
                except RegistrationError as exc:
                    logger.warning("Heartbeat for %s failed: %s", address, exc)
                    errors.offer(exc)
                if not await sleep_or_stop(interval, stop):
                    break
        finally:
            errors.close()

    async def _write_entry(self, store: KVStore, address: str, ttl: float) -> None:
        key = posixpath.join(self.path, address)
        try:
            await store.put(key, address.encode("utf-8"), WriteOptions(ttl=ttl))
        except Exception as exc:
            raise RegistrationError(message=f"Failed to register {address}", cause=exc) from exc

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Discovery task %s crashed", task.get_name(), exc_info=task.exception())
