import asyncio

import pytest
from conftest import eventually, pairs, receive

from kv_discovery.discover import Entry, KVDiscovery, Stream, WriteOptions, decode_entries
from kv_discovery.discover.store.kv_store import KVPair
from kv_discovery.exceptions import BootstrapError, SubscribeError


async def _drain(stream: Stream, timeout: float = 2.0) -> list:
    async def collect() -> list:
        return [item async for item in stream]

    return await asyncio.wait_for(collect(), timeout)


@pytest.mark.asyncio
async def test_watch_recovers_from_failures_and_resubscribes(fake_discovery, fake_store):
    first = Stream(maxsize=4)
    fake_store.exists_results = [RuntimeError("test error"), RuntimeError("test error")]
    fake_store.put_results = [RuntimeError("test error"), RuntimeError("test error")]
    fake_store.watch_results = [RuntimeError("test error"), first]

    stop = asyncio.Event()
    snapshots, errors = fake_discovery.watch(stop)

    for _ in range(2):
        error = await receive(errors)
        assert isinstance(error, BootstrapError)
        assert str(error.cause) == "test error"
    error = await receive(errors)
    assert isinstance(error, SubscribeError)
    assert isinstance(error.__cause__, RuntimeError)

    await first.send(pairs("1.1.1.1:1111", "2.2.2.2:2222"))
    assert await receive(snapshots) == [Entry.parse("1.1.1.1:1111"), Entry.parse("2.2.2.2:2222")]

    await first.send(pairs("1.1.1.1:1111", "2.2.2.2:2222", "3.3.3.3:3333"))
    entries = await receive(snapshots)
    assert [str(entry) for entry in entries] == ["1.1.1.1:1111", "2.2.2.2:2222", "3.3.3.3:3333"]

    # a closed subscription is resubscribed without reporting an error
    first.close()
    await eventually(lambda: len(fake_store.watch_calls) == 3)

    stop.set()
    assert await receive(snapshots) is None
    remaining = await _drain(errors)
    assert [type(e) for e in remaining] == [BootstrapError, BootstrapError]

    path = "path/docker/swarm/nodes"
    assert fake_store.watch_calls == [path, path, path]
    assert fake_store.writes[0] == (path, b"", WriteOptions(is_dir=True))


@pytest.mark.asyncio
async def test_watch_skips_bootstrap_when_namespace_exists(fake_discovery, fake_store):
    stop = asyncio.Event()
    fake_discovery.watch(stop)

    await eventually(lambda: len(fake_store.watch_calls) == 1)
    stop.set()

    assert fake_store.exists_calls == ["path/docker/swarm/nodes"]
    assert fake_store.writes == []


@pytest.mark.asyncio
async def test_watch_creates_missing_namespace(fake_discovery, fake_store):
    fake_store.exists_results = [False]
    stop = asyncio.Event()
    fake_discovery.watch(stop)

    await eventually(lambda: len(fake_store.watch_calls) == 1)
    stop.set()

    assert fake_store.writes == [("path/docker/swarm/nodes", b"", WriteOptions(is_dir=True))]


@pytest.mark.asyncio
async def test_watch_reports_failed_existence_check(fake_discovery, fake_store):
    failure = RuntimeError("exists boom")
    fake_store.exists_results = [failure]
    stop = asyncio.Event()
    _, errors = fake_discovery.watch(stop)

    error = await receive(errors)
    assert isinstance(error, BootstrapError)
    assert error.cause is failure

    await eventually(lambda: len(fake_store.watch_calls) == 1)
    stop.set()

    assert fake_store.writes == [("path/docker/swarm/nodes", b"", WriteOptions(is_dir=True))]
    assert await _drain(errors) == []


@pytest.mark.asyncio
async def test_watch_keeps_retrying_failed_subscriptions(fake_discovery, fake_store):
    fake_store.watch_results = [ConnectionError("down")] * 3
    stop = asyncio.Event()
    snapshots, errors = fake_discovery.watch(stop)

    for _ in range(3):
        error = await receive(errors)
        assert isinstance(error, SubscribeError)
        assert isinstance(error.cause, ConnectionError)

    await eventually(lambda: len(fake_store.watch_calls) == 4)
    stop.set()
    assert await receive(snapshots) is None


@pytest.mark.asyncio
async def test_watch_drops_undecodable_entries(fake_discovery, fake_store):
    stream = Stream(maxsize=4)
    fake_store.watch_results = [stream]
    stop = asyncio.Event()
    snapshots, _ = fake_discovery.watch(stop)

    await stream.send(
        [
            KVPair(key="path/c", value=b"3.3.3.3:3333"),
            KVPair(key="path/bad", value=b"no-port"),
            KVPair(key="path/a", value=b"1.1.1.1:1111"),
            KVPair(key="path/bin", value=b"\xff\xfe"),
        ]
    )
    entries = await receive(snapshots)
    stop.set()

    assert [str(entry) for entry in entries] == ["1.1.1.1:1111", "3.3.3.3:3333"]


@pytest.mark.asyncio
async def test_watch_publishes_empty_snapshots(fake_discovery, fake_store):
    stream = Stream(maxsize=4)
    fake_store.watch_results = [stream]
    stop = asyncio.Event()
    snapshots, _ = fake_discovery.watch(stop)

    await stream.send([])
    assert await receive(snapshots) == []
    stop.set()


@pytest.mark.asyncio
async def test_watch_publishes_one_snapshot_per_batch_in_order(fake_discovery, fake_store):
    stream = Stream(maxsize=4)
    fake_store.watch_results = [stream]
    stop = asyncio.Event()
    snapshots, _ = fake_discovery.watch(stop)

    await stream.send(pairs("1.1.1.1:1"))
    await stream.send(pairs("1.1.1.1:1", "2.2.2.2:2"))
    await stream.send(pairs("2.2.2.2:2"))

    received = [await receive(snapshots) for _ in range(3)]
    stop.set()

    assert [[str(e) for e in entries] for entries in received] == [
        ["1.1.1.1:1"],
        ["1.1.1.1:1", "2.2.2.2:2"],
        ["2.2.2.2:2"],
    ]


@pytest.mark.asyncio
async def test_stop_unblocks_pending_snapshot_send(fake_discovery, fake_store):
    stream = Stream(maxsize=4)
    fake_store.watch_results = [stream]
    stop = asyncio.Event()
    snapshots, errors = fake_discovery.watch(stop)

    # nobody reads: the second snapshot blocks the loop
    await stream.send(pairs("1.1.1.1:1"))
    await stream.send(pairs("2.2.2.2:2"))
    await eventually(lambda: stream._queue.empty())

    stop.set()
    await eventually(lambda: not fake_discovery._tasks)

    assert snapshots.closed
    assert errors.closed
    assert [str(e) for e in await receive(snapshots)] == ["1.1.1.1:1"]
    assert await receive(snapshots) is None


@pytest.mark.asyncio
async def test_no_backend_calls_after_stop(fake_discovery, fake_store):
    fake_store.watch_results = [ConnectionError("down")] * 100
    stop = asyncio.Event()
    snapshots, _ = fake_discovery.watch(stop)

    await eventually(lambda: len(fake_store.watch_calls) >= 2)
    stop.set()
    assert await receive(snapshots) is None

    calls = (len(fake_store.exists_calls), len(fake_store.watch_calls))
    await asyncio.sleep(0.05)
    assert (len(fake_store.exists_calls), len(fake_store.watch_calls)) == calls


@pytest.mark.asyncio
async def test_watch_with_stop_already_set_closes_immediately(fake_discovery, fake_store):
    stop = asyncio.Event()
    stop.set()
    snapshots, errors = fake_discovery.watch(stop)

    assert await receive(snapshots) is None
    assert await receive(errors) is None
    assert fake_store.exists_calls == []
    assert fake_store.watch_calls == []


def test_watch_requires_initialize():
    discovery = KVDiscovery("fake")
    with pytest.raises(RuntimeError):
        discovery.watch(asyncio.Event())


@pytest.mark.asyncio
async def test_close_cancels_loops_and_closes_store(fake_discovery, fake_store):
    stop = asyncio.Event()
    snapshots, _ = fake_discovery.watch(stop)
    await eventually(lambda: len(fake_store.watch_calls) == 1)

    await fake_discovery.close()

    assert snapshots.closed
    assert fake_store.closed
    assert not fake_discovery._tasks
    with pytest.raises(RuntimeError):
        fake_discovery.store


def test_decode_entries_orders_by_key():
    entries = decode_entries(
        [
            KVPair(key="n/b", value=b"10.0.0.2:2375"),
            KVPair(key="n/a", value=b"10.0.0.1:2375"),
        ]
    )
    assert [str(e) for e in entries] == ["10.0.0.1:2375", "10.0.0.2:2375"]


@pytest.mark.asyncio
async def test_watch_over_memory_store_follows_registrations(fast_config):
    watcher = KVDiscovery.from_url("memory://local/cluster", config=fast_config)
    member = KVDiscovery.from_url("memory://local/cluster", config=fast_config)
    stop = asyncio.Event()
    member_stop = asyncio.Event()

    snapshots, _ = watcher.watch(stop)
    assert await receive(snapshots) == []

    member.register("10.0.0.1:2375", member_stop, refresh_interval=0.02, ttl=0.1)
    assert await receive(snapshots) == [Entry(host="10.0.0.1", port="2375")]

    # once heartbeats stop, the TTL removes the entry
    member_stop.set()
    entries = await receive(snapshots)
    while entries:
        entries = await receive(snapshots)
    assert entries == []

    stop.set()
    await watcher.close()
    await member.close()
