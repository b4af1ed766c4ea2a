# tests/test_cache.py

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from persyste.services.cache import QueryCache

from .fakes import ManualClock

TASKS = ("persyste", "tasks")
TODAY = TASKS + ("list", "filter=today")
DONE = TASKS + ("list", "filter=completed")
USER = ("persyste", "auth", "currentUser")


def test_entries_are_enumerated_by_prefix(cache: QueryCache) -> None:
    cache.set(TODAY, [1])
    cache.set(DONE, [2])
    cache.set(USER, {"id": "u1"})

    assert cache.entries(TASKS) == [(TODAY, [1]), (DONE, [2])]
    assert len(cache.entries()) == 3


def test_every_write_gets_a_new_version(cache: QueryCache) -> None:
    v1 = cache.set(TODAY, [])
    v2 = cache.set(DONE, [])
    v3 = cache.set(TODAY, [1])

    assert v1 < v2 < v3
    assert cache.version(TODAY) == v3
    assert cache.version(USER) is None


def test_subscribers_are_notified_for_keys_under_their_key(cache: QueryCache) -> None:
    seen = []
    unsubscribe = cache.subscribe(TASKS, seen.append)

    cache.set(TODAY, [])
    cache.set(USER, {})
    cache.invalidate(TASKS)
    unsubscribe()
    cache.set(DONE, [])

    assert seen == [TODAY, TODAY]


def test_failing_listener_does_not_break_writes(cache: QueryCache) -> None:
    def broken(_key):
        raise RuntimeError("listener bug")

    cache.subscribe(TODAY, broken)
    cache.set(TODAY, [1])

    assert cache.get(TODAY) == [1]


@pytest.mark.asyncio
async def test_fresh_entries_are_served_without_fetching(cache: QueryCache) -> None:
    cache.set(TODAY, ["cached"])
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        return ["fresh"]

    assert await cache.fetch(TODAY, fetch) == ["cached"]
    assert calls == 0
    assert cache.get_stats().hits == 1


@pytest.mark.asyncio
async def test_stale_entries_are_refetched(cache: QueryCache, clock: ManualClock) -> None:
    cache.set(TODAY, ["old"], stale_time=timedelta(seconds=30))
    clock.advance(31)

    async def fetch():
        return ["new"]

    assert cache.is_stale(TODAY)
    assert await cache.fetch(TODAY, fetch) == ["new"]
    assert cache.get(TODAY) == ["new"]
    assert not cache.is_stale(TODAY)


@pytest.mark.asyncio
async def test_invalidated_entries_are_refetched(cache: QueryCache) -> None:
    cache.set(TODAY, ["old"])
    cache.set(USER, {"id": "u1"})

    assert cache.invalidate(TASKS) == 1
    assert cache.is_stale(TODAY)
    assert not cache.is_stale(USER)

    async def fetch():
        return ["new"]

    assert await cache.fetch(TODAY, fetch) == ["new"]


@pytest.mark.asyncio
async def test_fetch_result_is_dropped_when_key_was_written_meanwhile(
    cache: QueryCache,
) -> None:
    release = asyncio.Event()

    async def slow_fetch():
        await release.wait()
        return ["stale server copy"]

    reader = asyncio.create_task(cache.fetch(TODAY, slow_fetch))
    await asyncio.sleep(0)

    cache.set(TODAY, ["speculative"])
    release.set()

    assert await reader == ["stale server copy"]
    assert cache.get(TODAY) == ["speculative"]
    assert cache.get_stats().discarded == 1


@pytest.mark.asyncio
async def test_superseded_fetch_is_not_written_even_for_new_keys(
    cache: QueryCache,
) -> None:
    release = asyncio.Event()

    async def slow_fetch():
        await release.wait()
        return ["before the write"]

    reader = asyncio.create_task(cache.fetch(TODAY, slow_fetch))
    await asyncio.sleep(0)

    assert cache.supersede_fetches(TASKS) == 1
    assert cache.fetching() == []
    release.set()

    assert await reader == ["before the write"]
    assert cache.get(TODAY) is None
    assert cache.get_stats().discarded == 1


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_task(cache: QueryCache) -> None:
    release = asyncio.Event()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return ["x"]

    readers = [asyncio.create_task(cache.fetch(TODAY, fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    assert cache.fetching(TASKS) == [TODAY]

    release.set()
    assert await asyncio.gather(*readers) == [["x"], ["x"], ["x"]]
    assert calls == 1


@pytest.mark.asyncio
async def test_cancel_fetches_under_prefix(cache: QueryCache) -> None:
    async def hang():
        await asyncio.Event().wait()

    reader = asyncio.create_task(cache.fetch(TODAY, hang))
    await asyncio.sleep(0)

    assert cache.cancel_fetches(TASKS) == 1
    with pytest.raises(asyncio.CancelledError):
        await reader
    assert cache.get(TODAY) is None


def test_clear_removes_everything(cache: QueryCache) -> None:
    seen = []
    cache.subscribe(("persyste",), seen.append)
    cache.set(TODAY, [])
    cache.set(USER, {})
    seen.clear()

    cache.clear()

    assert cache.entries() == []
    assert sorted(seen) == sorted([TODAY, USER])
