from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse

from .acquisition import AcquisitionKey, ContentAcquisition
from .api import BackendClient, BackendResponseError, FetchError
from .chapters import ContentMode, ExpansionState, StructuralError
from .diagrams import DiagramEngine, MermaidCliEngine
from .markdown import render_plain_text
from .marks import LocalStore, SummaryMarkRegistry
from .reader import BookStructure, TocEntry
from .render import DIAGRAM, PENDING, MarkdownDiagramRenderer, Segment
from .settings import AIConfig, ConfigSchemaError
from .summarize import (
    DEFAULT_LANGUAGE,
    DEFAULT_RATIO,
    SummarizationParameters,
    SummarizationSession,
    ValidationError,
)

T = TypeVar("T")

MAX_PENDING_DIAGRAMS = 256


@dataclass(slots=True)
class WebConfig:
    api_base_url: str
    store_path: Path
    mmdc_path: str = "mmdc"
    timeout: float = 30.0


INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>bookbrief</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>
    :root {
      font-family: "Crimson Pro", Georgia, serif;
      --bg: #fffbeb;
      --panel: #ffffff;
      --accent: #f59e0b;
      --muted: #6b7280;
    }
    body { margin: 0; background: var(--bg); color: #1f2937; }
    header { padding: 12px 20px; border-bottom: 1px solid #fde68a; display: flex; gap: 12px; align-items: center; }
    header select { font: inherit; }
    main { display: grid; grid-template-columns: 320px 1fr; height: calc(100vh - 56px); }
    aside { overflow: auto; border-right: 1px solid #fde68a; background: var(--panel); }
    .toc-row { display: flex; align-items: center; gap: 6px; padding: 6px 10px; cursor: pointer; }
    .toc-row.current { background: #fef3c7; }
    .toc-row .label { color: var(--muted); font-size: 12px; }
    .toc-row .badge { color: var(--accent); }
    .toggle { width: 18px; border: 0; background: none; cursor: pointer; }
    section { overflow: auto; padding: 24px 40px; font-size: 18px; line-height: 1.7; }
    .controls { display: flex; gap: 12px; align-items: center; margin-bottom: 16px; flex-wrap: wrap; }
    .bb-diagram-error { border: 1px solid #fecaca; background: #fef2f2; padding: 12px; }
    .bb-diagram { display: flex; justify-content: center; margin: 24px 0; }
    .stats { color: var(--muted); font-size: 14px; }
    .error { color: #b91c1c; }
  </style>
</head>
<body>
  <header>
    <strong>bookbrief</strong>
    <select id="books"></select>
  </header>
  <main>
    <aside id="toc"></aside>
    <section>
      <div class="controls">
        <label><input type="checkbox" id="expanded"> include subsections</label>
        <label>Ratio <input type="range" id="ratio" min="0.1" max="0.8" step="0.1" value="0.3"></label>
        <span id="ratio-value">30%</span>
        <select id="language"><option value="english">English</option><option value="russian">Russian</option></select>
        <input id="prompt" placeholder="Custom instruction (optional)">
        <button id="summarize" disabled>Generate Summary</button>
        <button id="show-full">Full Text</button>
      </div>
      <div id="stats" class="stats"></div>
      <div id="content"></div>
    </section>
  </main>
  <script>
    const state = { book: null, chapter: null, expanded: new Set(), content: "" };
    const $ = (id) => document.getElementById(id);
    async function api(path, options) {
      const resp = await fetch(path, options);
      const body = await resp.json().catch(() => ({}));
      if (!resp.ok) throw new Error(body.detail || resp.statusText);
      return body;
    }
    function showError(message) {
      const p = document.createElement("p");
      p.className = "error";
      p.textContent = message;
      $("content").replaceChildren(p);
    }
    async function loadBooks() {
      const books = await api("/api/books");
      const select = $("books");
      select.replaceChildren(...books.map((book) => {
        const option = document.createElement("option");
        option.value = book.id;
        option.textContent = book.title;
        return option;
      }));
      if (books.length) { state.book = books[0].id; await loadToc(); }
    }
    async function loadToc() {
      const expanded = [...state.expanded].join(",");
      const params = new URLSearchParams({ expanded, current: state.chapter || "" });
      let rows;
      try {
        rows = await api(`/api/books/${encodeURIComponent(state.book)}/toc?${params}`);
      } catch (err) { showError(err.message); return; }
      $("toc").replaceChildren(...rows.map((row) => {
        const div = document.createElement("div");
        div.className = "toc-row" + (row.current ? " current" : "");
        div.style.paddingLeft = `${10 + row.depth * 16}px`;
        const toggle = document.createElement("button");
        toggle.className = "toggle";
        toggle.textContent = row.expandable ? (row.expanded ? "\\u25be" : "\\u25b8") : "";
        toggle.onclick = (event) => {
          event.stopPropagation();
          if (state.expanded.has(row.id)) state.expanded.delete(row.id); else state.expanded.add(row.id);
          loadToc();
        };
        const title = document.createElement("span");
        title.textContent = row.title;
        const label = document.createElement("span");
        label.className = "label";
        label.textContent = row.label;
        div.append(toggle, title, label);
        if (row.hasSummary) {
          const badge = document.createElement("span");
          badge.className = "badge";
          badge.textContent = "\\u2726";
          div.append(badge);
        }
        div.onclick = () => selectChapter(row.id);
        return div;
      }));
    }
    async function selectChapter(chapterId) {
      state.chapter = chapterId;
      const mode = $("expanded").checked ? "expanded" : "shallow";
      $("stats").textContent = "";
      $("content").textContent = "Loading chapter...";
      $("summarize").disabled = true;
      try {
        const body = await api(`/api/books/${encodeURIComponent(state.book)}/chapters/${encodeURIComponent(chapterId)}?mode=${mode}`);
        if (state.chapter !== chapterId) return;
        state.content = body.content;
        $("content").innerHTML = body.html;
        $("summarize").disabled = !body.content.trim();
      } catch (err) { showError(err.message); }
      loadToc();
    }
    async function summarize() {
      const chapterId = state.chapter;
      const mode = $("expanded").checked ? "expanded" : "shallow";
      $("summarize").disabled = true;
      try {
        const body = await api(`/api/books/${encodeURIComponent(state.book)}/chapters/${encodeURIComponent(chapterId)}/summary`, {
          method: "POST",
          headers: { "Content-Type": "application/json" },
          body: JSON.stringify({
            mode,
            ratio: parseFloat($("ratio").value),
            language: $("language").value,
            customPrompt: $("prompt").value || null,
          }),
        });
        if (state.chapter !== chapterId) return;
        $("stats").textContent = `${body.compressionLabel} \\u00b7 ${body.originalTokens} \\u2192 ${body.summaryTokens} tokens`;
        $("content").innerHTML = body.html;
        body.diagrams.forEach((id) => loadDiagram(id));
      } catch (err) { showError(err.message); }
      $("summarize").disabled = false;
      loadToc();
    }
    async function loadDiagram(id) {
      let body;
      try {
        body = await api(`/api/diagrams/${encodeURIComponent(id)}`);
      } catch (err) { return; }
      const target = document.querySelector(`[data-diagram-id="${id}"]`);
      if (target) target.outerHTML = body.html;
    }
    $("books").onchange = (event) => { state.book = event.target.value; state.chapter = null; state.expanded.clear(); loadToc(); };
    $("ratio").oninput = (event) => { $("ratio-value").textContent = `${Math.round(event.target.value * 100)}%`; };
    $("summarize").onclick = summarize;
    $("show-full").onclick = () => { if (state.chapter) selectChapter(state.chapter); };
    loadBooks().catch((err) => showError(err.message));
  </script>
</body>
</html>
"""


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, BackendResponseError) and exc.status_code == 404:
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (FetchError, StructuralError)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (ValidationError, ConfigSchemaError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    config: WebConfig,
    *,
    backend: BackendClient | None = None,
    engine: DiagramEngine | None = None,
) -> FastAPI:
    client = backend or BackendClient(config.api_base_url, timeout=config.timeout)
    store = LocalStore(config.store_path.expanduser())
    registry = SummaryMarkRegistry(store)
    renderer = MarkdownDiagramRenderer(engine or MermaidCliEngine(config.mmdc_path))
    acquisition = ContentAcquisition(client)
    structures: dict[str, BookStructure] = {}
    pending_diagrams: dict[str, Segment] = {}

    app = FastAPI(title="bookbrief")
    app.state.config = config
    app.state.backend = client
    app.state.registry = registry
    app.state.acquisition = acquisition

    async def _call(fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except (FetchError, ConfigSchemaError) as exc:
            raise _http_error(exc) from exc

    async def _structure(book_id: str, refresh: bool = False) -> BookStructure:
        cached = structures.get(book_id)
        if cached is not None and not refresh:
            return cached
        if refresh:
            acquisition.forget(book_id)
        payload = await _call(client.get_book_structure, book_id)
        try:
            book = BookStructure.from_payload(book_id, payload)
        except StructuralError as exc:
            raise _http_error(exc) from exc
        structures[book_id] = book
        return book

    async def _chapter_text(book_id: str, chapter_id: str, mode: str | None) -> tuple[str, ContentMode]:
        book = await _structure(book_id)
        chapter = book.tree.find(chapter_id)
        if chapter is None:
            raise HTTPException(status_code=404, detail="Chapter not found")
        try:
            resolved = book.tree.resolve_mode(chapter, mode)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            text = await acquisition.fetch(AcquisitionKey(book_id, chapter_id, resolved))
        except FetchError as exc:
            raise _http_error(exc) from exc
        return text, resolved

    @app.get("/", response_class=HTMLResponse)
    def index() -> HTMLResponse:
        return HTMLResponse(INDEX_HTML)

    @app.get("/api/books")
    async def api_books() -> JSONResponse:
        books = await _call(client.list_books)
        return JSONResponse(
            [
                {
                    "id": book.id,
                    "title": book.title,
                    "author": book.author,
                    "chapterCount": book.chapter_count,
                    "uploaded": book.upload_label,
                    "language": book.language,
                }
                for book in books
            ]
        )

    @app.delete("/api/books/{book_id}")
    async def api_delete_book(book_id: str) -> JSONResponse:
        await _call(client.delete_book, book_id)
        structures.pop(book_id, None)
        acquisition.forget(book_id)
        return JSONResponse({"deleted": True, "book": book_id})

    @app.get("/api/books/{book_id}/toc")
    async def api_toc(
        book_id: str,
        expanded: str = Query(""),
        current: str = Query(""),
        expand_all: bool = Query(False, alias="all"),
        refresh: bool = Query(False),
    ) -> JSONResponse:
        book = await _structure(book_id, refresh=refresh)
        expansion = ExpansionState({item for item in expanded.split(",") if item})
        if expand_all:
            expansion.expand_all(book.tree)
        if current and current in book.tree:
            expansion.reveal(book.tree, current)
        rows = [
            TocEntry(
                chapter=row.chapter,
                depth=row.depth,
                expandable=row.expandable,
                expanded=row.expanded,
                current=row.chapter.id == current,
                has_summary=registry.has(row.chapter.id),
            ).as_payload()
            for row in book.tree.visible_rows(expansion)
        ]
        return JSONResponse(rows)

    @app.get("/api/books/{book_id}/chapters/{chapter_id}")
    async def api_chapter(
        book_id: str,
        chapter_id: str,
        mode: str = Query(ContentMode.SHALLOW.value),
    ) -> JSONResponse:
        text, resolved = await _chapter_text(book_id, chapter_id, mode)
        return JSONResponse(
            {
                "chapter": chapter_id,
                "mode": resolved.value,
                "isFullContent": resolved is ContentMode.EXPANDED,
                "content": text,
                "html": render_plain_text(text),
                "hasSummary": registry.has(chapter_id),
            }
        )

    @app.post("/api/books/{book_id}/chapters/{chapter_id}/summary")
    async def api_summarize(
        book_id: str,
        chapter_id: str,
        payload: dict[str, Any] = Body(...),
    ) -> JSONResponse:
        text, resolved = await _chapter_text(book_id, chapter_id, payload.get("mode"))
        ratio = payload.get("ratio", DEFAULT_RATIO)
        language = payload.get("language") or DEFAULT_LANGUAGE
        prompt = payload.get("customPrompt")
        if not isinstance(language, str) or (prompt is not None and not isinstance(prompt, str)):
            raise HTTPException(status_code=400, detail="language and customPrompt must be text.")
        params = SummarizationParameters(
            compression_ratio=ratio,
            language=language,
            custom_prompt=prompt,
        )
        session = SummarizationSession(chapter_id, client, registry)
        try:
            artifact = await session.summarize(text, params)
        except (ValidationError, FetchError) as exc:
            raise _http_error(exc) from exc
        # Prose goes out now; each diagram is rendered on its own request.
        document = renderer.layout(artifact.summary_text)
        diagram_ids: list[str] = []
        for item in document.segments:
            if item.kind == DIAGRAM and item.status == PENDING:
                pending_diagrams[item.segment.segment_id] = item.segment
                diagram_ids.append(item.segment.segment_id)
        while len(pending_diagrams) > MAX_PENDING_DIAGRAMS:
            pending_diagrams.pop(next(iter(pending_diagrams)))
        return JSONResponse(
            {
                "chapter": chapter_id,
                "mode": resolved.value,
                "summary": artifact.summary_text,
                "originalTokens": artifact.original_token_count,
                "summaryTokens": artifact.summary_token_count,
                "actualRatio": artifact.actual_ratio,
                "compressionLabel": artifact.compression_label,
                "html": document.to_html(),
                "diagrams": diagram_ids,
            }
        )

    @app.get("/api/diagrams/{diagram_id}")
    async def api_diagram(diagram_id: str) -> JSONResponse:
        segment = pending_diagrams.get(diagram_id)
        if segment is None:
            raise HTTPException(status_code=404, detail="Diagram not found")
        rendered = await renderer.render_segment(segment)
        pending_diagrams.pop(diagram_id, None)
        return JSONResponse(
            {
                "id": diagram_id,
                "status": rendered.status,
                "html": rendered.html,
                "error": rendered.error,
            }
        )

    @app.get("/api/marks")
    def api_marks() -> JSONResponse:
        return JSONResponse({"chapters": registry.ids()})

    @app.get("/api/config")
    async def api_get_config() -> JSONResponse:
        payload = await _call(client.get_config)
        try:
            ai_config = AIConfig.from_payload(payload)
        except ConfigSchemaError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(dict(ai_config.display_items()))

    @app.put("/api/config")
    async def api_update_config(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        current = await _call(client.get_config)
        try:
            updated = AIConfig.from_payload(current).apply_updates(
                {key: str(value) for key, value in payload.items()}
            )
        except ConfigSchemaError as exc:
            raise _http_error(exc) from exc
        await _call(client.update_config, updated.to_payload())
        return JSONResponse(dict(updated.display_items()))

    @app.get("/api/models")
    async def api_models() -> JSONResponse:
        models = await _call(client.list_models)
        return JSONResponse(
            [{"name": model.name, "alias": model.alias, "hostedBy": model.hosted_by} for model in models]
        )

    return app


__all__ = ["INDEX_HTML", "WebConfig", "create_app"]
