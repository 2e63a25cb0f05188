from __future__ import annotations

import asyncio
import base64
import logging
import math
from typing import Any

import httpx

from kv_discovery.discover.store.kv_store import KVPair, KVStore, StoreOptions, WriteOptions, normalize_key
from kv_discovery.discover.store.store_factory import kv_store
from kv_discovery.discover.stream import Stream, race_stop
from kv_discovery.exceptions import KeyNotFoundError, StoreError

logger = logging.getLogger(__name__)

# Consul rejects session TTLs below ten seconds.
_MIN_SESSION_TTL = 10


@kv_store(name="consul")
class ConsulKVStore(KVStore):
    """Consul KV backend over the HTTP API.

    TTL keys are bound to a session created with ``Behavior=delete``; the
    session is renewed whenever the key is rewritten. Subtree watches use
    blocking queries.
    """

    watch_wait_seconds: float = 30.0

    def __init__(
        self,
        endpoints: list[str],
        options: StoreOptions | None = None,
        *,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(endpoints, options)
        address = self.endpoints[0]
        if "://" not in address:
            address = f"{self.options.scheme}://{address}"
        headers = {"X-Consul-Token": token} if token else None
        self._client = httpx.AsyncClient(
            base_url=address,
            timeout=self.options.connection_timeout,
            headers=headers,
            transport=transport,
        )
        self._sessions: dict[str, str] = {}
        self._watch_tasks: dict[asyncio.Task, Stream[list[KVPair]]] = {}

    async def exists(self, key: str) -> bool:
        key = normalize_key(key)
        response = await self._request("GET", f"/v1/kv/{key}", params={"keys": ""})
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        # the keys listing is a plain prefix match, so "nodes" also finds "nodes2"
        return any(k.rstrip("/") == key or k.startswith(key + "/") for k in response.json() or [])

    async def get(self, key: str) -> KVPair:
        key = normalize_key(key)
        response = await self._request("GET", f"/v1/kv/{key}")
        if response.status_code == 404:
            raise KeyNotFoundError(message=f"Key not found: {key}")
        self._raise_for_status(response)
        items = response.json() or []
        if not items:
            raise KeyNotFoundError(message=f"Key not found: {key}")
        return _to_pair(items[0])

    async def list(self, directory: str) -> list[KVPair]:
        pairs, _ = await self._list_with_index(normalize_key(directory))
        return pairs

    async def put(self, key: str, value: bytes, options: WriteOptions | None = None) -> None:
        key = normalize_key(key)
        options = options or WriteOptions()
        params: dict[str, Any] = {}
        if options.is_dir:
            key = key + "/"
        if options.ttl:
            params["acquire"] = await self._renew_session(key, options.ttl)

        response = await self._request("PUT", f"/v1/kv/{key}", params=params, content=value)
        self._raise_for_status(response)
        if response.json() is False:
            raise StoreError(message=f"Consul refused to write {key}")

    async def delete(self, key: str) -> None:
        key = normalize_key(key)
        response = await self._request("DELETE", f"/v1/kv/{key}")
        if response.status_code != 404:
            self._raise_for_status(response)
        session = self._sessions.pop(key, None)
        if session is not None:
            await self._request("PUT", f"/v1/session/destroy/{session}")

    async def watch_tree(self, directory: str, stop: asyncio.Event) -> Stream[list[KVPair]]:
        directory = normalize_key(directory)
        pairs, index = await self._list_with_index(directory)
        stream: Stream[list[KVPair]] = Stream(maxsize=1)
        stream.offer(pairs)
        task = asyncio.create_task(self._watch(directory, index, stream, stop))
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

    async def _watch(self, directory: str, index: int, stream: Stream[list[KVPair]], stop: asyncio.Event) -> None:
        try:
            await race_stop(self._follow(directory, index, stream), stop)
        except (StoreError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Consul watch on %s ended: %s", directory, exc)
        finally:
            stream.close()

    async def _follow(self, directory: str, index: int, stream: Stream[list[KVPair]]) -> None:
        while True:
            pairs, new_index = await self._list_with_index(directory, index=index, wait=self.watch_wait_seconds)
            if new_index == index:
                continue
            # Consul may reset its index; start over from zero when it goes backwards.
            index = new_index if new_index > index else 0
            await stream.send(pairs)

    async def _list_with_index(
        self,
        directory: str,
        *,
        index: int | None = None,
        wait: float | None = None,
    ) -> tuple[list[KVPair], int]:
        params: dict[str, Any] = {"recurse": ""}
        timeout: float | httpx.Timeout = self.options.connection_timeout
        if index is not None:
            params["index"] = index
        if wait is not None:
            params["wait"] = f"{int(wait)}s"
            timeout = wait + self.options.connection_timeout
        response = await self._request("GET", f"/v1/kv/{directory}/", params=params, timeout=timeout)
        new_index = int(response.headers.get("X-Consul-Index", 0))
        if response.status_code == 404:
            return [], new_index
        self._raise_for_status(response)
        pairs = [
            _to_pair(item)
            for item in response.json() or []
            if normalize_key(item.get("Key", "")) != directory
        ]
        pairs.sort(key=lambda pair: pair.key)
        return pairs, new_index

    async def _renew_session(self, key: str, ttl: float) -> str:
        session = self._sessions.get(key)
        if session is not None:
            response = await self._request("PUT", f"/v1/session/renew/{session}")
            if response.status_code == 200:
                return session
            logger.debug("Consul session %s for %s is gone, creating a new one", session, key)

        ttl_seconds = max(_MIN_SESSION_TTL, math.ceil(ttl))
        response = await self._request(
            "PUT",
            "/v1/session/create",
            json={"TTL": f"{ttl_seconds}s", "Behavior": "delete", "Name": f"kv-discovery:{key}"},
        )
        self._raise_for_status(response)
        session = response.json()["ID"]
        self._sessions[key] = session
        return session

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(message=f"Consul {method} {url} failed", cause=exc) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        raise StoreError(
            message=f"Consul returned HTTP {response.status_code} for {response.request.url.path}",
            data={"status": response.status_code, "body": response.text},
        )


def _to_pair(item: dict[str, Any]) -> KVPair:
    raw = item.get("Value")
    value = base64.b64decode(raw) if raw else b""
    return KVPair(key=normalize_key(item.get("Key", "")), value=value, last_index=int(item.get("ModifyIndex", 0)))
