from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import quote

import requests

from .chapters import ContentMode

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:3001/api"


class FetchError(RuntimeError):
    """Raised when the backend cannot deliver a requested resource."""


class BackendUnavailableError(FetchError):
    """Raised when the backend is unreachable or the request times out."""


class BackendResponseError(FetchError):
    """Raised when the backend answers with an error status or an unreadable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class ModelInfo:
    name: str
    alias: str
    hosted_by: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ModelInfo":
        name = payload.get("name")
        alias = payload.get("alias")
        hosted_by = payload.get("hostedBy")
        return cls(
            name=str(name) if name is not None else "",
            alias=str(alias) if alias is not None else (str(name) if name else ""),
            hosted_by=str(hosted_by) if hosted_by is not None else "",
        )


@dataclass(slots=True)
class BookListItem:
    id: str
    title: str
    author: str | None
    chapter_count: int
    upload_date: datetime | None
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def language(self) -> str | None:
        value = self.metadata.get("language")
        return value if isinstance(value, str) and value.strip() else None

    @property
    def upload_label(self) -> str:
        if self.upload_date is None:
            return ""
        return f"{self.upload_date:%b} {self.upload_date.day}, {self.upload_date.year}"

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "BookListItem":
        metadata = payload.get("metadata")
        if not isinstance(metadata, Mapping):
            metadata = {}
        title = payload.get("title") or metadata.get("title") or ""
        author = payload.get("author") or metadata.get("author")
        count = payload.get("chapterCount")
        return cls(
            id=str(payload.get("id", "")),
            title=str(title),
            author=str(author) if author else None,
            chapter_count=count if isinstance(count, int) and not isinstance(count, bool) else 0,
            upload_date=_parse_timestamp(payload.get("uploadDate")),
            metadata=dict(metadata),
        )


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _extract_text(payload: object, what: str) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, Mapping):
        for key in ("content", "text"):
            value = payload.get(key)
            if isinstance(value, str):
                return value
    raise BackendResponseError(f"Backend returned no text for {what}")


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class BackendClient:
    """
    Minimal HTTP client for the book backend (storage, EPUB parsing, AI completion).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30.0,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        *,
        what: str,
        expect_json: bool = True,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise BackendUnavailableError(
                f"Failed to contact backend at {self.base_url} ({what})"
            ) from exc

        if not 200 <= resp.status_code < 300:
            logger.warning("%s %s returned %s", method, url, resp.status_code)
            reason = resp.reason or resp.text
            raise BackendResponseError(
                f"Failed to {what}: {resp.status_code} {reason}".rstrip(),
                status_code=resp.status_code,
            )
        if not expect_json:
            return None
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise BackendResponseError(
                f"Backend returned invalid JSON while trying to {what}",
                status_code=resp.status_code,
            ) from exc

    def list_books(self) -> list[BookListItem]:
        payload = self._request("GET", "/books", what="fetch books")
        if not isinstance(payload, list):
            raise BackendResponseError("Book list must be an array")
        return [BookListItem.from_payload(item) for item in payload if isinstance(item, Mapping)]

    def upload_epub(self, path: Path) -> dict[str, object]:
        with path.open("rb") as fh:
            payload = self._request(
                "POST",
                "/upload",
                what="upload book",
                files={"epub": (path.name, fh, "application/epub+zip")},
            )
        return payload if isinstance(payload, dict) else {}

    def delete_book(self, book_id: str) -> None:
        self._request(
            "DELETE",
            f"/books/{_segment(book_id)}",
            what="delete book",
            expect_json=False,
        )

    def get_book_structure(self, book_id: str) -> object:
        return self._request(
            "GET",
            f"/books/{_segment(book_id)}/structure-nested",
            what="fetch book structure",
        )

    def get_chapter_content(self, book_id: str, chapter_id: str) -> str:
        payload = self._request(
            "GET",
            f"/books/{_segment(book_id)}/content/{_segment(chapter_id)}",
            what="fetch chapter content",
        )
        return _extract_text(payload, f"chapter {chapter_id}")

    def get_full_chapter_content(self, book_id: str, chapter_id: str) -> str:
        payload = self._request(
            "GET",
            f"/books/{_segment(book_id)}/full-content/{_segment(chapter_id)}",
            what="fetch full chapter content",
        )
        return _extract_text(payload, f"chapter {chapter_id} (full)")

    def fetch_content(self, book_id: str, chapter_id: str, mode: ContentMode) -> str:
        if mode is ContentMode.EXPANDED:
            return self.get_full_chapter_content(book_id, chapter_id)
        return self.get_chapter_content(book_id, chapter_id)

    def summarize(self, request: Mapping[str, object]) -> dict[str, object]:
        payload = self._request("POST", "/summarize", what="summarize content", json=dict(request))
        if not isinstance(payload, dict):
            raise BackendResponseError("Summarization response must be an object")
        return payload

    def get_config(self) -> dict[str, object]:
        payload = self._request("GET", "/config", what="fetch config")
        if not isinstance(payload, dict):
            raise BackendResponseError("Config response must be an object")
        return payload

    def update_config(self, config: Mapping[str, object]) -> dict[str, object]:
        logger.debug("Updating backend config fields: %s", sorted(config))
        payload = self._request("PUT", "/config", what="update config", json=dict(config))
        return payload if isinstance(payload, dict) else {}

    def list_models(self) -> list[ModelInfo]:
        payload = self._request("GET", "/models", what="fetch models")
        if not isinstance(payload, list):
            raise BackendResponseError("Model list must be an array")
        models = [ModelInfo.from_payload(item) for item in payload if isinstance(item, Mapping)]
        models.sort(key=lambda model: model.name.casefold())
        return models

    def close(self) -> None:
        self._session.close()


__all__ = [
    "BackendClient",
    "BackendResponseError",
    "BackendUnavailableError",
    "BookListItem",
    "DEFAULT_API_BASE_URL",
    "FetchError",
    "ModelInfo",
]
