import asyncio

import pytest
from conftest import eventually, receive

from kv_discovery.discover import WriteOptions
from kv_discovery.exceptions import InvalidEntryError, RegistrationError

MEMBER_KEY = "path/docker/swarm/nodes/10.0.0.1:2375"


@pytest.mark.asyncio
async def test_register_writes_entry_with_ttl_on_every_tick(fake_discovery, fake_store):
    stop = asyncio.Event()
    errors = fake_discovery.register("10.0.0.1:2375", stop, refresh_interval=0.01)

    await eventually(lambda: len(fake_store.writes) >= 3)
    stop.set()
    assert await receive(errors) is None

    for key, value, options in fake_store.writes:
        assert key == MEMBER_KEY
        assert value == b"10.0.0.1:2375"
        assert options == WriteOptions(ttl=30)


@pytest.mark.asyncio
async def test_register_writes_immediately(fake_discovery, fake_store):
    stop = asyncio.Event()
    fake_discovery.register("10.0.0.1:2375", stop, refresh_interval=60)

    await eventually(lambda: len(fake_store.writes) == 1)
    stop.set()


@pytest.mark.asyncio
async def test_register_reports_failures_and_keeps_writing(fake_discovery, fake_store):
    fake_store.put_results = [RuntimeError("write refused")]
    stop = asyncio.Event()
    errors = fake_discovery.register("10.0.0.1:2375", stop, refresh_interval=0.01, ttl=5)

    error = await receive(errors)
    assert isinstance(error, RegistrationError)
    assert "write refused" in str(error)

    await eventually(lambda: len(fake_store.writes) >= 2)
    stop.set()
    assert await receive(errors) is None
    assert fake_store.writes[-1][2] == WriteOptions(ttl=5)


def test_register_rejects_invalid_address(fake_discovery):
    with pytest.raises(InvalidEntryError):
        fake_discovery.register("not-an-address", asyncio.Event())


@pytest.mark.asyncio
async def test_register_once_writes_single_entry(fake_discovery, fake_store):
    await fake_discovery.register_once("10.0.0.1:2375")

    assert fake_store.writes == [(MEMBER_KEY, b"10.0.0.1:2375", WriteOptions(ttl=30))]


@pytest.mark.asyncio
async def test_register_once_raises_registration_error(fake_discovery, fake_store):
    fake_store.put_results = [ConnectionError("down")]

    with pytest.raises(RegistrationError) as exc_info:
        await fake_discovery.register_once("10.0.0.1:2375", ttl=1)

    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert exc_info.value.code == 2002


@pytest.mark.asyncio
async def test_register_stops_writing_after_stop(fake_discovery, fake_store):
    stop = asyncio.Event()
    errors = fake_discovery.register("10.0.0.1:2375", stop, refresh_interval=0.01)
    await eventually(lambda: len(fake_store.writes) >= 1)

    stop.set()
    assert await receive(errors) is None
    writes = len(fake_store.writes)
    await asyncio.sleep(0.05)
    assert len(fake_store.writes) == writes
