from __future__ import annotations

import asyncio

import pytest

from bookbrief.acquisition import AcquisitionKey, ContentAcquisition, ContentStatus
from bookbrief.api import BackendResponseError
from bookbrief.chapters import ContentMode

from conftest import FakeBackend


def test_shallow_and_expanded_are_cached_separately() -> None:
    backend = FakeBackend()
    acquisition = ContentAcquisition(backend)

    async def run() -> tuple[str | None, str | None, str | None]:
        shallow = await acquisition.acquire("book-1", "c1", ContentMode.SHALLOW)
        expanded = await acquisition.acquire("book-1", "c1", ContentMode.EXPANDED)
        again = await acquisition.acquire("book-1", "c1", ContentMode.SHALLOW)
        return shallow, expanded, again

    shallow, expanded, again = asyncio.run(run())
    assert shallow == "Intro"
    assert expanded == "Intro\nSub text"
    assert again == "Intro"
    assert backend.fetch_calls == [
        ("book-1", "c1", ContentMode.SHALLOW),
        ("book-1", "c1", ContentMode.EXPANDED),
    ]
    state = acquisition.state("book-1", "c1", ContentMode.EXPANDED)
    assert state.status is ContentStatus.LOADED
    assert state.is_full_content is True
    assert acquisition.state("book-1", "c1", ContentMode.SHALLOW).is_full_content is False


def test_concurrent_requests_share_one_backend_call() -> None:
    backend = FakeBackend(delay=0.05)
    acquisition = ContentAcquisition(backend)
    key = AcquisitionKey("book-1", "c2", ContentMode.SHALLOW)

    async def run() -> list[str]:
        return await asyncio.gather(*(acquisition.fetch(key) for _ in range(5)))

    results = asyncio.run(run())
    assert results == ["Second chapter body"] * 5
    assert len(backend.fetch_calls) == 1


def test_superseded_selection_returns_none() -> None:
    backend = FakeBackend(delay=0.05)
    acquisition = ContentAcquisition(backend)

    async def run() -> tuple[str | None, str | None]:
        first = asyncio.ensure_future(acquisition.acquire("book-1", "c1", ContentMode.SHALLOW))
        await asyncio.sleep(0)
        second = await acquisition.acquire("book-1", "c2", ContentMode.SHALLOW)
        return await first, second

    first, second = asyncio.run(run())
    assert first is None
    assert second == "Second chapter body"
    assert acquisition.active_key == AcquisitionKey("book-1", "c2", ContentMode.SHALLOW)
    # The stale result is still kept for later selections.
    assert acquisition.state("book-1", "c1", ContentMode.SHALLOW).text == "Intro"


def test_failure_is_recorded_and_retried() -> None:
    backend = FakeBackend(content={})
    acquisition = ContentAcquisition(backend)

    with pytest.raises(BackendResponseError):
        asyncio.run(acquisition.acquire("book-1", "c1", ContentMode.SHALLOW))
    state = acquisition.state("book-1", "c1", ContentMode.SHALLOW)
    assert state.status is ContentStatus.FAILED
    assert isinstance(state.error, BackendResponseError)

    backend.content[("c1", ContentMode.SHALLOW)] = "Intro"
    assert asyncio.run(acquisition.acquire("book-1", "c1", ContentMode.SHALLOW)) == "Intro"
    assert len(backend.fetch_calls) == 2


def test_clear_drops_cached_text() -> None:
    backend = FakeBackend()
    acquisition = ContentAcquisition(backend)
    asyncio.run(acquisition.acquire("book-1", "c2", ContentMode.SHALLOW))
    acquisition.clear()
    assert acquisition.active_key is None
    assert acquisition.state("book-1", "c2", ContentMode.SHALLOW).status is ContentStatus.UNFETCHED


def test_clear_detaches_running_fetch() -> None:
    backend = FakeBackend(delay=0.05)
    acquisition = ContentAcquisition(backend)

    async def run() -> tuple[str | None, str | None]:
        first = asyncio.ensure_future(acquisition.acquire("book-1", "c2", ContentMode.SHALLOW))
        await asyncio.sleep(0.01)
        acquisition.clear()
        backend.content[("c2", ContentMode.SHALLOW)] = "NEW"
        stale = await first
        fresh = await acquisition.acquire("book-1", "c2", ContentMode.SHALLOW)
        return stale, fresh

    stale, fresh = asyncio.run(run())
    assert stale is None
    assert fresh == "NEW"
    assert acquisition.state("book-1", "c2", ContentMode.SHALLOW).text == "NEW"
    assert len(backend.fetch_calls) == 2


def test_forget_drops_only_one_book() -> None:
    backend = FakeBackend()
    acquisition = ContentAcquisition(backend)

    async def run() -> None:
        await acquisition.fetch(AcquisitionKey("book-1", "c2", ContentMode.SHALLOW))
        await acquisition.fetch(AcquisitionKey("book-2", "c2", ContentMode.SHALLOW))

    asyncio.run(run())
    assert acquisition.forget("book-1") == 1
    assert acquisition.state("book-1", "c2", ContentMode.SHALLOW).status is ContentStatus.UNFETCHED
    assert acquisition.state("book-2", "c2", ContentMode.SHALLOW).status is ContentStatus.LOADED

    backend.content[("c2", ContentMode.SHALLOW)] = "re-uploaded body"
    assert asyncio.run(acquisition.fetch(AcquisitionKey("book-1", "c2", ContentMode.SHALLOW))) == "re-uploaded body"
