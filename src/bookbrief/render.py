from __future__ import annotations

import asyncio
import html
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from .diagrams import DiagramEngine, DiagramRenderError
from .markdown import render_prose

logger = logging.getLogger(__name__)

DIAGRAM_LANGUAGE = "mermaid"

PROSE = "prose"
DIAGRAM = "diagram"

PENDING = "pending"
RENDERED = "rendered"
FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Segment:
    kind: str
    text: str
    segment_id: str


def _is_diagram_fence(line: str) -> bool:
    stripped = line.strip()
    if not stripped.startswith("```"):
        return False
    info = stripped[3:].strip().split()
    return bool(info) and info[0].lower() == DIAGRAM_LANGUAGE


def _is_closing_fence(line: str) -> bool:
    return line.strip() == "```"


def split_segments(text: str, *, id_prefix: str | None = None) -> list[Segment]:
    """
    Split AI output into prose and diagram segments in source order.

    A diagram starts at a fence line tagged ``mermaid`` and ends at the next bare
    fence line; an unterminated fence runs to the end of the text.
    Whitespace-only prose between fences is dropped.
    """
    prefix = id_prefix or f"diagram-{uuid.uuid4().hex[:8]}"
    segments: list[Segment] = []
    buffer: list[str] = []
    in_diagram = False

    def flush(kind: str) -> None:
        body = "\n".join(buffer)
        buffer.clear()
        if kind == PROSE and not body.strip():
            return
        segments.append(Segment(kind=kind, text=body, segment_id=f"{prefix}-{len(segments)}"))

    for line in text.splitlines():
        if not in_diagram and _is_diagram_fence(line):
            flush(PROSE)
            in_diagram = True
            continue
        if in_diagram and _is_closing_fence(line):
            flush(DIAGRAM)
            in_diagram = False
            continue
        buffer.append(line)
    flush(DIAGRAM if in_diagram else PROSE)
    return segments


@dataclass(slots=True)
class RenderedSegment:
    segment: Segment
    html: str
    status: str
    error: str | None = None

    @property
    def kind(self) -> str:
        return self.segment.kind


@dataclass(slots=True)
class RenderedDocument:
    segments: list[RenderedSegment] = field(default_factory=list)

    @property
    def diagram_count(self) -> int:
        return sum(1 for item in self.segments if item.kind == DIAGRAM)

    @property
    def failures(self) -> list[RenderedSegment]:
        return [item for item in self.segments if item.status == FAILED]

    def to_html(self) -> str:
        return "\n".join(item.html for item in self.segments)


def _diagram_pending_html(segment: Segment) -> str:
    return (
        f'<div class="bb-diagram bb-diagram-pending" data-diagram-id="{html.escape(segment.segment_id)}">'
        f"<pre>{html.escape(segment.text)}</pre></div>"
    )


def _diagram_html(segment: Segment, svg: str) -> str:
    return (
        f'<div class="bb-diagram" data-diagram-id="{html.escape(segment.segment_id)}">'
        f"{svg}</div>"
    )


def _diagram_error_html(segment: Segment, message: str) -> str:
    return (
        f'<div class="bb-diagram bb-diagram-error" data-diagram-id="{html.escape(segment.segment_id)}">'
        f'<p class="bb-diagram-error-label">Failed to render diagram: {html.escape(message)}</p>'
        f"<pre>{html.escape(segment.text)}</pre></div>"
    )


class MarkdownDiagramRenderer:
    """Turn summary text into escaped prose blocks and rendered diagrams."""

    def __init__(self, engine: DiagramEngine) -> None:
        self._engine = engine

    def layout(self, text: str, *, id_prefix: str | None = None) -> RenderedDocument:
        document = RenderedDocument()
        for segment in split_segments(text, id_prefix=id_prefix):
            if segment.kind == PROSE:
                document.segments.append(
                    RenderedSegment(segment=segment, html=render_prose(segment.text), status=RENDERED)
                )
            else:
                document.segments.append(
                    RenderedSegment(segment=segment, html=_diagram_pending_html(segment), status=PENDING)
                )
        return document

    async def render_segment(self, segment: Segment) -> RenderedSegment:
        """Render one diagram segment; any engine failure stays within the segment."""
        loop = asyncio.get_running_loop()
        try:
            svg = await loop.run_in_executor(None, self._engine.render, segment.text, segment.segment_id)
        except DiagramRenderError as exc:
            logger.warning("Diagram %s failed to render: %s", segment.segment_id, exc)
            message = str(exc)
        except Exception as exc:
            logger.warning(
                "Diagram engine raised %s for %s: %s", type(exc).__name__, segment.segment_id, exc
            )
            message = f"{type(exc).__name__}: {exc}"
        else:
            return RenderedSegment(segment=segment, html=_diagram_html(segment, svg), status=RENDERED)
        return RenderedSegment(
            segment=segment,
            html=_diagram_error_html(segment, message),
            status=FAILED,
            error=message,
        )

    async def fill_diagrams(
        self,
        document: RenderedDocument,
        on_update: Callable[[int, RenderedSegment], None] | None = None,
    ) -> RenderedDocument:
        async def _render(index: int) -> None:
            updated = await self.render_segment(document.segments[index].segment)
            document.segments[index] = updated
            if on_update is not None:
                on_update(index, updated)

        pending = [
            _render(index)
            for index, item in enumerate(document.segments)
            if item.kind == DIAGRAM and item.status == PENDING
        ]
        if pending:
            await asyncio.gather(*pending)
        return document

    async def render(self, text: str, *, id_prefix: str | None = None) -> RenderedDocument:
        document = self.layout(text, id_prefix=id_prefix)
        return await self.fill_diagrams(document)


__all__ = [
    "DIAGRAM",
    "DIAGRAM_LANGUAGE",
    "FAILED",
    "MarkdownDiagramRenderer",
    "PENDING",
    "PROSE",
    "RENDERED",
    "RenderedDocument",
    "RenderedSegment",
    "Segment",
    "split_segments",
]
