from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from .acquisition import ContentAcquisition, ContentSource
from .api import FetchError
from .chapters import Chapter, ChapterTree, ContentMode, ExpansionState, StructuralError
from .markdown import render_plain_text
from .marks import SummaryMarkRegistry
from .render import MarkdownDiagramRenderer, RenderedDocument
from .summarize import (
    SummarizationParameters,
    SummarizationSession,
    SummaryArtifact,
    Summarizer,
)

logger = logging.getLogger(__name__)

VIEW_FULL = "full"
VIEW_SUMMARY = "summary"


class ReaderBackend(ContentSource, Summarizer, Protocol):
    def get_book_structure(self, book_id: str) -> object: ...


@dataclass(slots=True)
class BookStructure:
    id: str
    title: str
    author: str | None
    tree: ChapterTree
    metadata: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, book_id: str, payload: object) -> "BookStructure":
        tree = ChapterTree.from_payload(payload)
        if not isinstance(payload, Mapping):
            return cls(id=book_id, title=book_id, author=None, tree=tree)
        metadata = payload.get("metadata")
        if not isinstance(metadata, Mapping):
            metadata = {}
        title = payload.get("title") or metadata.get("title") or book_id
        author = payload.get("author") or metadata.get("author")
        return cls(
            id=str(payload.get("id") or book_id),
            title=str(title),
            author=str(author) if author else None,
            tree=tree,
            metadata=dict(metadata),
        )


@dataclass(frozen=True, slots=True)
class TocEntry:
    chapter: Chapter
    depth: int
    expandable: bool
    expanded: bool
    current: bool
    has_summary: bool

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.chapter.id,
            "title": self.chapter.title,
            "order": self.chapter.order,
            "label": self.chapter.order_label,
            "href": self.chapter.href,
            "depth": self.depth,
            "expandable": self.expandable,
            "expanded": self.expanded,
            "current": self.current,
            "hasSummary": self.has_summary,
        }


@dataclass(frozen=True, slots=True)
class Selection:
    chapter: Chapter
    mode: ContentMode


class ReaderSession:
    """
    One reader window: a loaded book, its table of contents, the selected
    chapter and the summarization session scoped to that selection.
    """

    def __init__(
        self,
        backend: ReaderBackend,
        registry: SummaryMarkRegistry,
        renderer: MarkdownDiagramRenderer,
        *,
        cache_summaries: bool = False,
    ) -> None:
        self._backend = backend
        self.registry = registry
        self.renderer = renderer
        self.acquisition = ContentAcquisition(backend)
        self.cache_summaries = cache_summaries
        self.book: BookStructure | None = None
        self.expansion = ExpansionState()
        self.selection: Selection | None = None
        self.content: str | None = None
        self.content_error: Exception | None = None
        self.summary_session: SummarizationSession | None = None
        self.view_mode = VIEW_FULL
        self._summary_cache: dict[
            tuple[str, ContentMode, SummarizationParameters], SummaryArtifact
        ] = {}

    @property
    def tree(self) -> ChapterTree:
        if self.book is None:
            raise RuntimeError("No book loaded.")
        return self.book.tree

    async def load_book(self, book_id: str) -> BookStructure:
        loop = asyncio.get_running_loop()
        payload = await loop.run_in_executor(None, self._backend.get_book_structure, book_id)
        try:
            book = BookStructure.from_payload(book_id, payload)
        except StructuralError:
            logger.warning("Book %s has a malformed chapter structure", book_id)
            raise
        self.book = book
        self.expansion = ExpansionState()
        self.acquisition.clear()
        self.selection = None
        self.content = None
        self.content_error = None
        self.summary_session = None
        self.view_mode = VIEW_FULL
        self._summary_cache.clear()
        return book

    def toggle(self, chapter_id: str) -> bool:
        return self.expansion.toggle(chapter_id)

    def toc(self) -> list[TocEntry]:
        current_id = self.selection.chapter.id if self.selection else None
        return [
            TocEntry(
                chapter=row.chapter,
                depth=row.depth,
                expandable=row.expandable,
                expanded=row.expanded,
                current=row.chapter.id == current_id,
                has_summary=self.registry.has(row.chapter.id),
            )
            for row in self.tree.visible_rows(self.expansion)
        ]

    async def select_chapter(
        self,
        chapter_id: str,
        mode: ContentMode | str = ContentMode.SHALLOW,
    ) -> str | None:
        """Select a chapter and load its text; ``None`` if superseded meanwhile."""
        if self.book is None:
            raise RuntimeError("No book loaded.")
        chapter = self.tree.find(chapter_id)
        if chapter is None:
            raise KeyError(chapter_id)
        resolved = self.tree.resolve_mode(chapter, mode)
        selection = Selection(chapter=chapter, mode=resolved)
        if selection != self.selection:
            self.selection = selection
            self.summary_session = SummarizationSession(chapter.id, self._backend, self.registry)
            self.view_mode = VIEW_FULL
            self.content = None
        self.expansion.reveal(self.tree, chapter.id)
        self.content_error = None
        try:
            text = await self.acquisition.acquire(self.book.id, chapter.id, resolved)
        except FetchError as exc:
            if self.selection == selection:
                self.content_error = exc
            raise
        if text is None or self.selection != selection:
            return None
        self.content = text
        cached = self._cached_artifact()
        if cached is not None and self.summary_session is not None:
            self.summary_session.artifact = cached
        return text

    def can_summarize(self) -> bool:
        return self.summary_session is not None and self.summary_session.can_summarize(self.content)

    def set_parameters(self, parameters: SummarizationParameters) -> None:
        if self.summary_session is None:
            raise RuntimeError("No chapter selected.")
        self.summary_session.parameters = parameters

    def _cache_key(
        self, parameters: SummarizationParameters
    ) -> tuple[str, ContentMode, SummarizationParameters] | None:
        if self.selection is None:
            return None
        return (self.selection.chapter.id, self.selection.mode, parameters.normalized())

    def _cached_artifact(self) -> SummaryArtifact | None:
        if not self.cache_summaries or self.summary_session is None:
            return None
        key = self._cache_key(self.summary_session.parameters)
        return self._summary_cache.get(key) if key else None

    async def summarize(
        self, parameters: SummarizationParameters | None = None
    ) -> SummaryArtifact | None:
        """Summarize the loaded text; ``None`` when the selection changed meanwhile."""
        session = self.summary_session
        if session is None or self.content is None:
            raise RuntimeError("No chapter content loaded.")
        params = parameters or session.parameters
        key = self._cache_key(params)
        if self.cache_summaries and key in self._summary_cache:
            session.parameters = params.normalized()
            session.artifact = self._summary_cache[key]
            self.view_mode = VIEW_SUMMARY
            return session.artifact
        artifact = await session.summarize(self.content, params)
        if key is not None and self.cache_summaries:
            self._summary_cache[key] = artifact
        if session is not self.summary_session:
            return None
        self.view_mode = VIEW_SUMMARY
        return artifact

    def set_view_mode(self, mode: str) -> str:
        if mode not in {VIEW_FULL, VIEW_SUMMARY}:
            raise ValueError(f"Unknown view mode: {mode}")
        if mode == VIEW_SUMMARY and (self.summary_session is None or self.summary_session.artifact is None):
            return self.view_mode
        self.view_mode = mode
        return self.view_mode

    def render_content(self) -> str:
        return render_plain_text(self.content or "")

    async def render_summary(self) -> RenderedDocument | None:
        if self.summary_session is None or self.summary_session.artifact is None:
            return None
        return await self.renderer.render(self.summary_session.artifact.summary_text)


__all__ = [
    "BookStructure",
    "ReaderBackend",
    "ReaderSession",
    "Selection",
    "TocEntry",
    "VIEW_FULL",
    "VIEW_SUMMARY",
]
