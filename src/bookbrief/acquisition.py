from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .api import FetchError
from .chapters import ContentMode

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    def fetch_content(self, book_id: str, chapter_id: str, mode: ContentMode) -> str: ...


class ContentStatus(str, Enum):
    UNFETCHED = "unfetched"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class AcquisitionKey:
    book_id: str
    chapter_id: str
    mode: ContentMode


@dataclass(frozen=True, slots=True)
class ContentState:
    status: ContentStatus
    text: str | None = None
    is_full_content: bool = False
    error: FetchError | None = None


_UNFETCHED = ContentState(ContentStatus.UNFETCHED)


class ContentAcquisition:
    """
    Fetches chapter text per ``(book, chapter, mode)`` key.

    Shallow and expanded text are cached separately. At most one backend
    call is outstanding per key; later callers await the same future.
    ``acquire`` marks its key as the active selection and returns ``None``
    when the key has been superseded by the time the fetch resolves. All
    state is touched from the event loop only; the blocking backend call
    runs in the loop's default executor.

    ``clear`` and ``forget`` detach fetches that are still running: their
    results are handed to the callers already waiting but never written
    back into the cache.
    """

    def __init__(self, source: ContentSource) -> None:
        self._source = source
        self._states: dict[AcquisitionKey, ContentState] = {}
        self._inflight: dict[AcquisitionKey, asyncio.Future[str]] = {}
        self._active: AcquisitionKey | None = None
        self._generation = 0
        self._book_generations: dict[str, int] = {}

    @property
    def active_key(self) -> AcquisitionKey | None:
        return self._active

    def state(self, book_id: str, chapter_id: str, mode: ContentMode) -> ContentState:
        return self._states.get(AcquisitionKey(book_id, chapter_id, mode), _UNFETCHED)

    def clear(self) -> None:
        self._states.clear()
        self._inflight.clear()
        self._active = None
        self._generation += 1

    def forget(self, book_id: str) -> int:
        """Drop every cached or in-flight entry of one book; returns the number dropped."""
        stale = [key for key in self._states if key.book_id == book_id]
        for key in stale:
            del self._states[key]
        for key in [key for key in self._inflight if key.book_id == book_id]:
            del self._inflight[key]
        if self._active is not None and self._active.book_id == book_id:
            self._active = None
        self._book_generations[book_id] = self._book_generations.get(book_id, 0) + 1
        return len(stale)

    def _stamp(self, book_id: str) -> tuple[int, int]:
        return self._generation, self._book_generations.get(book_id, 0)

    async def acquire(self, book_id: str, chapter_id: str, mode: ContentMode) -> str | None:
        key = AcquisitionKey(book_id, chapter_id, mode)
        self._active = key
        try:
            text = await self.fetch(key)
        except FetchError:
            if self._active != key:
                logger.debug("Dropping failure for superseded selection %s", key)
                return None
            raise
        if self._active != key:
            logger.debug("Dropping stale content for %s", key)
            return None
        return text

    async def fetch(self, key: AcquisitionKey) -> str:
        """Fetch without touching the active selection."""
        cached = self._states.get(key)
        if cached is not None and cached.status is ContentStatus.LOADED and cached.text is not None:
            return cached.text
        future = self._inflight.get(key)
        if future is None:
            self._states[key] = ContentState(ContentStatus.LOADING)
            future = asyncio.ensure_future(self._load(key, self._stamp(key.book_id)))
            self._inflight[key] = future
        else:
            logger.debug("Attaching to in-flight fetch for %s", key)
        return await asyncio.shield(future)

    async def _load(self, key: AcquisitionKey, stamp: tuple[int, int]) -> str:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        try:
            text = await loop.run_in_executor(
                None,
                self._source.fetch_content,
                key.book_id,
                key.chapter_id,
                key.mode,
            )
        except FetchError as exc:
            if self._stamp(key.book_id) == stamp:
                self._states[key] = ContentState(ContentStatus.FAILED, error=exc)
            raise
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]
        if self._stamp(key.book_id) != stamp:
            logger.debug("Not caching %s fetched before the cache was reset", key)
            return text
        self._states[key] = ContentState(
            ContentStatus.LOADED,
            text=text,
            is_full_content=key.mode is ContentMode.EXPANDED,
        )
        return text


__all__ = [
    "AcquisitionKey",
    "ContentAcquisition",
    "ContentSource",
    "ContentState",
    "ContentStatus",
]
