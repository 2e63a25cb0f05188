from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
from typing import Any

import httpx

from kv_discovery.discover.store.kv_store import KVPair, KVStore, StoreOptions, WriteOptions, normalize_key
from kv_discovery.discover.store.store_factory import kv_store
from kv_discovery.discover.stream import Stream, race_stop
from kv_discovery.exceptions import KeyNotFoundError, StoreError

logger = logging.getLogger(__name__)


def _b64(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return base64.b64encode(value).decode("ascii")


def prefix_range_end(prefix: str) -> bytes:
    """Return the smallest key greater than every key starting with ``prefix``."""
    end = bytearray(prefix.encode("utf-8"))
    for i in range(len(end) - 1, -1, -1):
        if end[i] < 0xFF:
            end[i] += 1
            return bytes(end[: i + 1])
    # every byte is 0xff: range to the end of the keyspace
    return b"\0"


@kv_store(name="etcd")
class EtcdKVStore(KVStore):
    """etcd v3 backend over the JSON gRPC gateway.

    TTL keys are attached to a lease. Each rewrite grants a fresh lease and
    revokes the previous one once the key has moved over.
    """

    def __init__(
        self,
        endpoints: list[str],
        options: StoreOptions | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(endpoints, options)
        address = self.endpoints[0]
        if "://" not in address:
            address = f"{self.options.scheme}://{address}"
        self._client = httpx.AsyncClient(
            base_url=address,
            timeout=self.options.connection_timeout,
            transport=transport,
        )
        self._leases: dict[str, str] = {}
        self._watch_tasks: dict[asyncio.Task, Stream[list[KVPair]]] = {}

    async def exists(self, key: str) -> bool:
        key = normalize_key(key)
        result = await self._post("/v3/kv/range", {"key": _b64(key), "count_only": True})
        if int(result.get("count", 0)) > 0:
            return True
        prefix = key + "/"
        result = await self._post(
            "/v3/kv/range",
            {"key": _b64(prefix), "range_end": _b64(prefix_range_end(prefix)), "count_only": True},
        )
        return int(result.get("count", 0)) > 0

    async def get(self, key: str) -> KVPair:
        key = normalize_key(key)
        result = await self._post("/v3/kv/range", {"key": _b64(key)})
        kvs = result.get("kvs") or []
        if not kvs:
            raise KeyNotFoundError(message=f"Key not found: {key}")
        return _to_pair(kvs[0])

    async def list(self, directory: str) -> list[KVPair]:
        pairs, _ = await self._list_with_revision(normalize_key(directory))
        return pairs

    async def put(self, key: str, value: bytes, options: WriteOptions | None = None) -> None:
        key = normalize_key(key)
        options = options or WriteOptions()
        payload: dict[str, Any] = {"key": _b64(key), "value": _b64(value)}
        previous_lease = None
        if options.ttl:
            granted = await self._post("/v3/lease/grant", {"TTL": max(1, math.ceil(options.ttl))})
            payload["lease"] = granted["ID"]
            previous_lease = self._leases.get(key)
            self._leases[key] = granted["ID"]

        await self._post("/v3/kv/put", payload)
        if previous_lease is not None:
            await self._revoke(previous_lease)

    async def delete(self, key: str) -> None:
        key = normalize_key(key)
        await self._post("/v3/kv/deleterange", {"key": _b64(key)})
        lease = self._leases.pop(key, None)
        if lease is not None:
            await self._revoke(lease)

    async def watch_tree(self, directory: str, stop: asyncio.Event) -> Stream[list[KVPair]]:
        directory = normalize_key(directory)
        pairs, revision = await self._list_with_revision(directory)
        stream: Stream[list[KVPair]] = Stream(maxsize=1)
        stream.offer(pairs)
        task = asyncio.create_task(self._watch(directory, revision, stream, stop))
        self._watch_tasks[task] = stream
        task.add_done_callback(self._forget_watch)
        return stream

    async def close(self) -> None:
        watches = list(self._watch_tasks.items())
        for task, stream in watches:
            task.cancel()
            stream.close()
        await asyncio.gather(*(task for task, _ in watches), return_exceptions=True)
        await self._client.aclose()

    def _forget_watch(self, task: asyncio.Task) -> None:
        self._watch_tasks.pop(task, None)

    async def _watch(self, directory: str, revision: int, stream: Stream[list[KVPair]], stop: asyncio.Event) -> None:
        try:
            await race_stop(self._follow(directory, revision, stream), stop)
        except (StoreError, httpx.HTTPError, ValueError) as exc:
            logger.warning("etcd watch on %s ended: %s", directory, exc)
        finally:
            stream.close()

    async def _follow(self, directory: str, revision: int, stream: Stream[list[KVPair]]) -> None:
        prefix = directory + "/"
        request = {
            "create_request": {
                "key": _b64(prefix),
                "range_end": _b64(prefix_range_end(prefix)),
                "start_revision": str(revision + 1),
            }
        }
        timeout = httpx.Timeout(self.options.connection_timeout, read=None)
        async with self._client.stream("POST", "/v3/watch", json=request, timeout=timeout) as response:
            self._raise_for_status(response)
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                result = json.loads(line).get("result") or {}
                if result.get("canceled"):
                    logger.info("etcd cancelled watch on %s: %s", directory, result.get("cancel_reason"))
                    return
                if not result.get("events"):
                    continue
                pairs, _ = await self._list_with_revision(directory)
                await stream.send(pairs)

    async def _list_with_revision(self, directory: str) -> tuple[list[KVPair], int]:
        prefix = directory + "/"
        result = await self._post(
            "/v3/kv/range",
            {
                "key": _b64(prefix),
                "range_end": _b64(prefix_range_end(prefix)),
                "sort_order": "ASCEND",
                "sort_target": "KEY",
            },
        )
        revision = int((result.get("header") or {}).get("revision", 0))
        return [_to_pair(kv) for kv in result.get("kvs") or []], revision

    async def _revoke(self, lease: str) -> None:
        try:
            await self._post("/v3/lease/revoke", {"ID": lease})
        except StoreError as exc:
            # the lease expires on its own
            logger.debug("Failed to revoke etcd lease %s: %s", lease, exc)

    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise StoreError(message=f"etcd POST {url} failed", cause=exc) from exc
        self._raise_for_status(response)
        return response.json()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise StoreError(
            message=f"etcd returned HTTP {response.status_code} for {response.request.url.path}",
            data={"status": response.status_code},
        )


def _to_pair(kv: dict[str, Any]) -> KVPair:
    raw = kv.get("value")
    value = base64.b64decode(raw) if raw else b""
    key = base64.b64decode(kv.get("key", "")).decode("utf-8")
    return KVPair(key=normalize_key(key), value=value, last_index=int(kv.get("mod_revision", 0)))
