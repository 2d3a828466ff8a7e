"""Restricted markdown for AI summaries.

Only what summaries actually use is recognized: ``#``/``##``/``###``
headings, ``**bold**`` and ``*italic*`` emphasis, bullet and numbered list
lines, and blank-line separated paragraphs. Parsing is a single pass over
lines into a flat list of blocks; rendering escapes every piece of text
before any markup is added.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Iterable, Union

_HEADING_RE = re.compile(r"^(#{1,3})\s+(.*\S)\s*$")
_BULLET_RE = re.compile(r"^\s*[-*+]\s+(.*)$")
_NUMBERED_RE = re.compile(r"^\s*(\d+)[.)]\s+(.*)$")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"\*(?!\s)(.+?)(?<!\s)\*")


@dataclass(slots=True)
class Heading:
    level: int
    text: str


@dataclass(slots=True)
class Paragraph:
    lines: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ListBlock:
    ordered: bool
    items: list[str] = field(default_factory=list)
    start: int = 1


Block = Union[Heading, Paragraph, ListBlock]


def classify_line(line: str) -> tuple[str, object]:
    if not line.strip():
        return "blank", None
    heading = _HEADING_RE.match(line.strip())
    if heading:
        return "heading", (len(heading.group(1)), heading.group(2))
    numbered = _NUMBERED_RE.match(line)
    if numbered:
        return "ordered", (int(numbered.group(1)), numbered.group(2).strip())
    bullet = _BULLET_RE.match(line)
    if bullet:
        return "bullet", bullet.group(1).strip()
    return "text", line.strip()


def parse_prose(text: str) -> list[Block]:
    blocks: list[Block] = []
    current: Paragraph | ListBlock | None = None
    for line in text.splitlines():
        kind, value = classify_line(line)
        if kind == "blank":
            current = None
        elif kind == "heading":
            level, heading_text = value  # type: ignore[misc]
            blocks.append(Heading(level=level, text=heading_text))
            current = None
        elif kind in {"bullet", "ordered"}:
            ordered = kind == "ordered"
            item_text = value[1] if ordered else value  # type: ignore[index]
            if not isinstance(current, ListBlock) or current.ordered != ordered:
                current = ListBlock(
                    ordered=ordered,
                    start=value[0] if ordered else 1,  # type: ignore[index]
                )
                blocks.append(current)
            current.items.append(item_text)  # type: ignore[arg-type]
        else:
            if not isinstance(current, Paragraph):
                current = Paragraph()
                blocks.append(current)
            current.lines.append(value)  # type: ignore[arg-type]
    return blocks


def render_inline(text: str) -> str:
    escaped = html.escape(text, quote=True)
    escaped = _BOLD_RE.sub(r'<strong class="bb-strong">\1</strong>', escaped)
    escaped = _ITALIC_RE.sub(r'<em class="bb-em">\1</em>', escaped)
    return escaped


def render_blocks(blocks: Iterable[Block]) -> str:
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, Heading):
            parts.append(
                f'<h{block.level} class="bb-h{block.level}">{render_inline(block.text)}</h{block.level}>'
            )
        elif isinstance(block, ListBlock):
            tag = "ol" if block.ordered else "ul"
            start = f' start="{block.start}"' if block.ordered and block.start != 1 else ""
            items = "".join(f"<li>{render_inline(item)}</li>" for item in block.items)
            parts.append(f'<{tag} class="bb-list"{start}>{items}</{tag}>')
        else:
            body = "<br />".join(render_inline(line) for line in block.lines)
            parts.append(f'<p class="bb-p">{body}</p>')
    return "\n".join(parts)


def render_prose(text: str) -> str:
    return render_blocks(parse_prose(text))


def render_plain_text(text: str) -> str:
    """Full chapter text: escaped, line breaks kept."""
    return html.escape(text, quote=True).replace("\n", "<br />\n")


__all__ = [
    "Block",
    "Heading",
    "ListBlock",
    "Paragraph",
    "classify_line",
    "parse_prose",
    "render_blocks",
    "render_inline",
    "render_plain_text",
    "render_prose",
]
