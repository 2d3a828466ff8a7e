from __future__ import annotations

import asyncio

import pytest

from bookbrief.api import BackendUnavailableError
from bookbrief.chapters import ContentMode, StructuralError
from bookbrief.marks import LocalStore, SummaryMarkRegistry
from bookbrief.reader import VIEW_FULL, VIEW_SUMMARY, ReaderSession
from bookbrief.render import MarkdownDiagramRenderer
from bookbrief.summarize import SummarizationParameters

from conftest import FakeBackend, FakeDiagramEngine


def _reader(tmp_path, backend: FakeBackend, *, cache: bool = False) -> ReaderSession:
    registry = SummaryMarkRegistry(LocalStore(tmp_path / "store.json"))
    renderer = MarkdownDiagramRenderer(FakeDiagramEngine())
    return ReaderSession(backend, registry, renderer, cache_summaries=cache)


def test_expanded_chapter_summary_marks_chapter(tmp_path) -> None:
    backend = FakeBackend()
    reader = _reader(tmp_path, backend)

    async def run():
        await reader.load_book("book-1")
        shallow = await reader.select_chapter("c1", ContentMode.SHALLOW)
        expanded = await reader.select_chapter("c1", ContentMode.EXPANDED)
        artifact = await reader.summarize(SummarizationParameters(0.3, "english"))
        return shallow, expanded, artifact

    shallow, expanded, artifact = asyncio.run(run())

    assert shallow == "Intro"
    assert expanded == "Intro\nSub text"
    assert backend.summarize_requests[0]["content"] == "Intro\nSub text"
    assert backend.summarize_requests[0]["ratio"] == 0.3
    assert artifact.compression_label == "28% compressed"
    assert reader.view_mode == VIEW_SUMMARY
    entries = {entry.chapter.id: entry for entry in reader.toc()}
    assert entries["c1"].has_summary is True
    assert entries["c1"].current is True
    assert entries["c2"].has_summary is False


def test_selecting_nested_chapter_reveals_parent(tmp_path) -> None:
    reader = _reader(tmp_path, FakeBackend())

    async def run():
        await reader.load_book("book-1")
        return await reader.select_chapter("c1.1")

    assert asyncio.run(run()) == "Sub text"
    assert [entry.chapter.id for entry in reader.toc()] == ["c1", "c1.1", "c2"]
    payload = reader.toc()[1].as_payload()
    assert payload["label"] == "Chapter 1"
    assert payload["depth"] == 1
    assert payload["current"] is True


def test_expanded_mode_on_leaf_uses_shallow_text(tmp_path) -> None:
    backend = FakeBackend()
    reader = _reader(tmp_path, backend)

    async def run():
        await reader.load_book("book-1")
        return await reader.select_chapter("c2", "expanded")

    assert asyncio.run(run()) == "Second chapter body"
    assert backend.fetch_calls == [("book-1", "c2", ContentMode.SHALLOW)]
    assert reader.selection.mode is ContentMode.SHALLOW


def test_changing_selection_resets_summary_state(tmp_path) -> None:
    reader = _reader(tmp_path, FakeBackend())

    async def run():
        await reader.load_book("book-1")
        await reader.select_chapter("c2")
        await reader.summarize()
        await reader.select_chapter("c1")

    asyncio.run(run())
    assert reader.view_mode == VIEW_FULL
    assert reader.summary_session.chapter_id == "c1"
    assert reader.summary_session.artifact is None
    assert reader.set_view_mode(VIEW_SUMMARY) == VIEW_FULL
    assert reader.registry.has("c2")


def test_summary_cache_reuses_artifact(tmp_path) -> None:
    backend = FakeBackend()
    reader = _reader(tmp_path, backend, cache=True)

    async def run():
        await reader.load_book("book-1")
        await reader.select_chapter("c2")
        await reader.summarize()
        await reader.select_chapter("c1")
        await reader.select_chapter("c2")
        restored = reader.summary_session.artifact
        await reader.summarize()
        return restored

    restored = asyncio.run(run())
    assert restored is not None
    assert len(backend.summarize_requests) == 1


def test_summary_failure_leaves_content_visible(tmp_path) -> None:
    backend = FakeBackend()
    backend.summarize_error = BackendUnavailableError("offline")
    reader = _reader(tmp_path, backend)

    async def run():
        await reader.load_book("book-1")
        await reader.select_chapter("c2")
        await reader.summarize()

    with pytest.raises(BackendUnavailableError):
        asyncio.run(run())
    assert reader.content == "Second chapter body"
    assert reader.view_mode == VIEW_FULL
    assert not reader.registry.has("c2")


def test_render_summary_includes_diagrams(tmp_path) -> None:
    backend = FakeBackend()
    backend.summary_response["summary"] = "# Gist\n\n```mermaid\ngraph TD\n  A --> B\n```"
    reader = _reader(tmp_path, backend)

    async def run():
        await reader.load_book("book-1")
        await reader.select_chapter("c2")
        await reader.summarize()
        return await reader.render_summary()

    document = asyncio.run(run())
    assert document.diagram_count == 1
    assert document.failures == []
    assert "<svg" in document.to_html()
    assert reader.render_content() == "Second chapter body"


def test_unknown_chapter_and_malformed_book(tmp_path) -> None:
    reader = _reader(tmp_path, FakeBackend())

    async def run_unknown():
        await reader.load_book("book-1")
        await reader.select_chapter("nope")

    with pytest.raises(KeyError):
        asyncio.run(run_unknown())

    broken = _reader(tmp_path, FakeBackend(structure=[{"id": "a"}, {"id": "a"}]))
    with pytest.raises(StructuralError):
        asyncio.run(broken.load_book("book-1"))
    assert broken.book is None
