from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

SUMMARY_MARKS_KEY = "chapterSummaries"
LOCAL_STORE_VERSION = 1


class PersistenceError(ValueError):
    """Raised when persisted local state cannot be decoded."""


class LocalStore:
    """
    Small key/value store persisted as one JSON file.

    Values are serialized strings, so each consumer owns its own encoding
    and a corrupt value for one key never affects another.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._items = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
            logger.warning("Ignoring unreadable local store %s: %s", self.path, exc)
            return {}
        items = raw.get("items") if isinstance(raw, dict) else None
        if not isinstance(items, dict):
            logger.warning("Ignoring local store %s without an items table", self.path)
            return {}
        return {str(key): value for key, value in items.items() if isinstance(value, str)}

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value
            payload = {"version": LOCAL_STORE_VERSION, "items": dict(self._items)}
        self._write(payload)

    def _write(self, payload: dict[str, object]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)


def _decode_marks(serialized: str) -> set[str]:
    try:
        raw = json.loads(serialized)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise PersistenceError(f"Summary marks are not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise PersistenceError("Summary marks must be a JSON object.")
    return {str(chapter_id) for chapter_id, flag in raw.items() if flag is True}


class SummaryMarkRegistry:
    """Chapters that have produced at least one summary in this profile."""

    def __init__(self, store: LocalStore, key: str = SUMMARY_MARKS_KEY) -> None:
        self._store = store
        self._key = key
        self._lock = threading.Lock()
        self._marked = self._load()

    def _load(self) -> set[str]:
        serialized = self._store.get_item(self._key)
        if serialized is None:
            return set()
        try:
            return _decode_marks(serialized)
        except PersistenceError as exc:
            logger.warning("Resetting summary marks: %s", exc)
            return set()

    def has(self, chapter_id: str) -> bool:
        with self._lock:
            return chapter_id in self._marked

    __contains__ = has

    def __len__(self) -> int:
        with self._lock:
            return len(self._marked)

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._marked)

    def mark(self, chapter_id: str) -> None:
        with self._lock:
            self._marked.add(chapter_id)
            serialized = json.dumps({key: True for key in sorted(self._marked)}, ensure_ascii=False)
            try:
                self._store.set_item(self._key, serialized)
            except OSError as exc:
                logger.warning("Could not persist summary marks to %s: %s", self._store.path, exc)


__all__ = [
    "LOCAL_STORE_VERSION",
    "LocalStore",
    "PersistenceError",
    "SUMMARY_MARKS_KEY",
    "SummaryMarkRegistry",
]
