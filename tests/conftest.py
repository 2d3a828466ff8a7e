from __future__ import annotations

import threading
import time
from typing import Mapping

import pytest

from bookbrief.api import BackendResponseError, BookListItem, ModelInfo
from bookbrief.chapters import ContentMode
from bookbrief.diagrams import DiagramRenderError

SAMPLE_STRUCTURE = {
    "id": "book-1",
    "title": "Sample Book",
    "author": "A. Writer",
    "chapters": [
        {
            "id": "c1",
            "title": "Intro",
            "order": 1,
            "href": "intro.xhtml",
            "children": [
                {"id": "c1.1", "title": "Sub", "order": 1, "href": "intro.xhtml#sub", "parentId": "c1"},
            ],
        },
        {"id": "c2", "title": "Second", "order": 2, "href": "second.xhtml"},
    ],
}

SAMPLE_CONTENT = {
    ("c1", ContentMode.SHALLOW): "Intro",
    ("c1", ContentMode.EXPANDED): "Intro\nSub text",
    ("c1.1", ContentMode.SHALLOW): "Sub text",
    ("c2", ContentMode.SHALLOW): "Second chapter body",
}


class FakeBackend:
    """In-memory stand-in for BackendClient that records every call."""

    def __init__(
        self,
        structure: object | None = None,
        content: Mapping[tuple[str, ContentMode], str] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.structure = SAMPLE_STRUCTURE if structure is None else structure
        self.content = dict(SAMPLE_CONTENT if content is None else content)
        self.delay = delay
        self.fetch_calls: list[tuple[str, str, ContentMode]] = []
        self.summarize_requests: list[dict[str, object]] = []
        self.summary_response: dict[str, object] = {
            "summary": "A short summary.",
            "originalTokens": 100,
            "summaryTokens": 28,
            "actualRatio": 0.28,
        }
        self.summarize_error: Exception | None = None
        self.config: dict[str, object] = {
            "apiEndpoint": "https://llm.example/v1",
            "apiKey": "sk-test-1234567890",
            "modelName": "gpt-4o",
            "prompt": "Summarize.",
            "defaultRatio": 0.3,
        }
        self.deleted: list[str] = []
        self._lock = threading.Lock()

    def get_book_structure(self, book_id: str) -> object:
        return self.structure

    def fetch_content(self, book_id: str, chapter_id: str, mode: ContentMode) -> str:
        with self._lock:
            self.fetch_calls.append((book_id, chapter_id, mode))
        if self.delay:
            time.sleep(self.delay)
        try:
            return self.content[(chapter_id, mode)]
        except KeyError:
            raise BackendResponseError(
                f"Failed to fetch chapter content: 404 {chapter_id}", status_code=404
            ) from None

    def summarize(self, request: Mapping[str, object]) -> dict[str, object]:
        self.summarize_requests.append(dict(request))
        if self.summarize_error is not None:
            raise self.summarize_error
        return dict(self.summary_response)

    def list_books(self) -> list[BookListItem]:
        return [
            BookListItem.from_payload(
                {
                    "id": "book-1",
                    "title": "Sample Book",
                    "author": "A. Writer",
                    "chapterCount": 3,
                    "uploadDate": "2025-03-05T10:00:00Z",
                    "metadata": {"language": "en"},
                }
            )
        ]

    def delete_book(self, book_id: str) -> None:
        self.deleted.append(book_id)

    def get_config(self) -> dict[str, object]:
        return dict(self.config)

    def update_config(self, config: Mapping[str, object]) -> dict[str, object]:
        self.config = dict(config)
        return dict(config)

    def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(name="alpha", alias="Alpha", hosted_by="openai"),
            ModelInfo(name="beta", alias="Beta", hosted_by="local"),
        ]


class FakeDiagramEngine:
    """Returns a tiny SVG per diagram; sources containing ``fail`` raise."""

    def __init__(self) -> None:
        self.rendered: list[str] = []

    def render(self, source: str, diagram_id: str) -> str:
        if "fail" in source:
            raise DiagramRenderError(f"Parse error in {diagram_id}")
        self.rendered.append(diagram_id)
        return f'<svg id="{diagram_id}"></svg>'


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def engine() -> FakeDiagramEngine:
    return FakeDiagramEngine()
