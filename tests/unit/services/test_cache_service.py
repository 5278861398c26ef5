import asyncio

import pytest

from freight_market.services.cache_service import QueryCache

KEY = ("messages", "c1")


def test_set_data_accepts_values_and_updaters():
    cache = QueryCache()
    seen = []
    cache.add_listener(lambda key, value: seen.append((key, value)))

    cache.set_data(KEY, [1])
    cache.set_data(KEY, lambda previous: previous + [2])

    assert cache.get_data(KEY) == [1, 2]
    assert seen == [(KEY, [1]), (KEY, [1, 2])]
    assert cache.get_data(("messages", "missing"), default=[]) == []


def test_invalidate_and_remove():
    cache = QueryCache()
    assert cache.is_stale(KEY)

    cache.set_data(KEY, [])
    assert not cache.is_stale(KEY)

    cache.invalidate(KEY)
    assert cache.is_stale(KEY)
    assert KEY in cache

    cache.remove(KEY)
    assert KEY not in cache


@pytest.mark.asyncio
async def test_fetch_loads_once_and_reuses_fresh_data():
    cache = QueryCache()
    calls = []

    async def loader():
        calls.append(1)
        await asyncio.sleep(0)
        return ["m1"]

    first, second = await asyncio.gather(cache.fetch(KEY, loader), cache.fetch(KEY, loader))
    third = await cache.fetch(KEY, loader)

    assert first == second == third == ["m1"]
    assert len(calls) == 1

    await cache.fetch(KEY, loader, force=True)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_cancelled_load_never_overwrites_newer_data():
    cache = QueryCache()
    release = asyncio.Event()

    async def loader():
        await release.wait()
        return ["stale"]

    pending = asyncio.ensure_future(cache.fetch(KEY, loader))
    await asyncio.sleep(0)

    await cache.cancel(KEY)
    cache.set_data(KEY, ["optimistic"])
    release.set()

    with pytest.raises(asyncio.CancelledError):
        await pending
    assert cache.get_data(KEY) == ["optimistic"]


@pytest.mark.asyncio
async def test_failed_load_leaves_the_entry_untouched():
    cache = QueryCache()
    cache.set_data(KEY, ["old"])
    cache.invalidate(KEY)

    async def loader():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        await cache.fetch(KEY, loader)

    assert cache.get_data(KEY) == ["old"]
    assert cache.is_stale(KEY)


@pytest.mark.asyncio
async def test_clear_drops_data_and_cancels_loads():
    cache = QueryCache()
    cache.set_data(KEY, ["m1"])
    never = asyncio.Event()

    async def loader():
        await never.wait()

    pending = asyncio.ensure_future(cache.fetch(("messages", "c2"), loader))
    await asyncio.sleep(0)

    cache.clear()

    with pytest.raises(asyncio.CancelledError):
        await pending
    assert KEY not in cache
