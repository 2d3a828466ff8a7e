from __future__ import annotations

import asyncio

from bookbrief.render import (
    DIAGRAM,
    FAILED,
    PENDING,
    PROSE,
    RENDERED,
    MarkdownDiagramRenderer,
    split_segments,
)

from conftest import FakeDiagramEngine

SUMMARY = """## Overview

Some **bold** prose.

```mermaid
graph TD
  A --> B
```

Between diagrams.

```mermaid
fail here
```
"""


def test_split_segments_keeps_source_order() -> None:
    segments = split_segments(SUMMARY, id_prefix="d")
    assert [segment.kind for segment in segments] == [PROSE, DIAGRAM, PROSE, DIAGRAM]
    assert segments[1].text == "graph TD\n  A --> B"
    assert [segment.segment_id for segment in segments] == ["d-0", "d-1", "d-2", "d-3"]


def test_other_fences_stay_prose() -> None:
    segments = split_segments("```python\nprint(1)\n```", id_prefix="d")
    assert [segment.kind for segment in segments] == [PROSE]


def test_unterminated_fence_runs_to_end() -> None:
    segments = split_segments("intro\n```mermaid\ngraph LR\n  A --> B", id_prefix="d")
    assert [segment.kind for segment in segments] == [PROSE, DIAGRAM]
    assert segments[1].text == "graph LR\n  A --> B"


def test_default_prefix_is_unique_per_call() -> None:
    first = split_segments("```mermaid\ngraph TD\n```")[0].segment_id
    second = split_segments("```mermaid\ngraph TD\n```")[0].segment_id
    assert first != second


def test_layout_renders_prose_and_marks_diagrams_pending() -> None:
    renderer = MarkdownDiagramRenderer(FakeDiagramEngine())
    document = renderer.layout(SUMMARY, id_prefix="d")
    assert [item.status for item in document.segments] == [RENDERED, PENDING, RENDERED, PENDING]
    assert "bb-strong" in document.segments[0].html
    assert "graph TD" in document.segments[1].html


def test_failed_diagram_does_not_affect_others() -> None:
    engine = FakeDiagramEngine()
    renderer = MarkdownDiagramRenderer(engine)
    updates: list[int] = []

    async def run():
        document = renderer.layout(SUMMARY, id_prefix="d")
        return await renderer.fill_diagrams(document, lambda index, _item: updates.append(index))

    document = asyncio.run(run())
    assert document.diagram_count == 2
    assert document.segments[1].status == RENDERED
    assert '<svg id="d-1"></svg>' in document.segments[1].html
    assert document.segments[3].status == FAILED
    assert "Parse error in d-3" in document.segments[3].html
    assert "fail here" in document.segments[3].html
    assert [item.segment.segment_id for item in document.failures] == ["d-3"]
    assert sorted(updates) == [1, 3]
    html = document.to_html()
    assert html.index("Overview") < html.index("d-1") < html.index("Between diagrams")


def test_error_output_is_escaped() -> None:
    renderer = MarkdownDiagramRenderer(FakeDiagramEngine())
    document = asyncio.run(renderer.render("```mermaid\nfail <img src=x>\n```", id_prefix="d"))
    assert "<img" not in document.to_html()
    assert "&lt;img src=x&gt;" in document.to_html()


class _ChokingEngine:
    def render(self, source: str, diagram_id: str) -> str:
        if "choke" in source:
            raise ValueError("engine choked")
        return f'<svg id="{diagram_id}"></svg>'


def test_unexpected_engine_error_stays_in_its_segment() -> None:
    renderer = MarkdownDiagramRenderer(_ChokingEngine())
    text = "```mermaid\ngraph TD\n```\n\n```mermaid\nchoke\n```"
    document = asyncio.run(renderer.render(text, id_prefix="d"))
    assert [item.status for item in document.segments] == [RENDERED, FAILED]
    assert '<svg id="d-0"></svg>' in document.segments[0].html
    assert document.segments[1].error == "ValueError: engine choked"
    assert "engine choked" in document.segments[1].html


def test_render_segment_renders_one_diagram() -> None:
    renderer = MarkdownDiagramRenderer(FakeDiagramEngine())
    segment = split_segments("```mermaid\ngraph TD\n```", id_prefix="d")[0]
    rendered = asyncio.run(renderer.render_segment(segment))
    assert rendered.status == RENDERED
    assert rendered.html == '<div class="bb-diagram" data-diagram-id="d-0"><svg id="d-0"></svg></div>'
