from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Mapping


class StructuralError(ValueError):
    """Raised when a chapter structure payload is malformed."""


class ContentMode(str, Enum):
    SHALLOW = "shallow"
    EXPANDED = "expanded"

    @classmethod
    def parse(cls, value: "str | ContentMode | None") -> "ContentMode":
        if isinstance(value, ContentMode):
            return value
        if value is None:
            return cls.SHALLOW
        normalized = str(value).strip().lower()
        if normalized in {"full", "expanded"}:
            return cls.EXPANDED
        if normalized in {"", "shallow", "partial"}:
            return cls.SHALLOW
        raise ValueError(f"Unknown content mode: {value}")


@dataclass(frozen=True, slots=True)
class Chapter:
    id: str
    title: str
    order: int
    href: str
    children: tuple["Chapter", ...] = ()
    level: int = 0
    parent_id: str | None = None

    @property
    def has_children(self) -> bool:
        return bool(self.children)

    @property
    def order_label(self) -> str:
        return f"Chapter {self.order}"


@dataclass(frozen=True, slots=True)
class TocRow:
    chapter: Chapter
    depth: int
    expandable: bool
    expanded: bool


def _coerce_order(raw: object, fallback: int) -> int:
    if isinstance(raw, bool):
        return fallback
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return fallback


def _chapter_id(entry: Mapping[str, object]) -> str:
    raw = entry.get("id")
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise StructuralError(f"Chapter entry is missing a usable id: {entry.get('title')!r}")
    value = str(raw).strip()
    if not value:
        raise StructuralError("Chapter id must not be empty.")
    return value


def _chapter_entries(payload: object) -> list[Mapping[str, object]]:
    if isinstance(payload, Mapping):
        payload = payload.get("chapters")
    if not isinstance(payload, list):
        raise StructuralError("Chapter structure must be a list of chapters.")
    for entry in payload:
        if not isinstance(entry, Mapping):
            raise StructuralError("Every chapter entry must be an object.")
    return payload


class ChapterTree:
    """Read-only table of contents built from a nested structure payload.

    Sibling order is kept exactly as declared. Ids are unique across the
    whole tree; a repeated id (which also covers a payload that refers back
    to one of its own ancestors) raises :class:`StructuralError` before any
    node is handed out.
    """

    def __init__(self, roots: Iterable[Chapter]) -> None:
        self._roots: tuple[Chapter, ...] = tuple(roots)
        self._by_id: dict[str, Chapter] = {}
        self._parents: dict[str, str | None] = {}
        stack: list[tuple[Chapter, str | None]] = [
            (chapter, None) for chapter in reversed(self._roots)
        ]
        while stack:
            chapter, parent_id = stack.pop()
            if chapter.id in self._by_id:
                raise StructuralError(f"Duplicate chapter id: {chapter.id}")
            self._by_id[chapter.id] = chapter
            self._parents[chapter.id] = parent_id
            for child in reversed(chapter.children):
                stack.append((child, chapter.id))

    @classmethod
    def from_payload(cls, payload: object) -> "ChapterTree":
        entries = _chapter_entries(payload)
        seen_ids: set[str] = set()
        active_objects: set[int] = set()

        # Iterative post-order build: a frame is (entry, depth, parent_id, built_children).
        def _frame(entry: Mapping[str, object], depth: int, parent_id: str | None):
            if id(entry) in active_objects:
                raise StructuralError("Chapter structure contains a cycle.")
            chapter_id = _chapter_id(entry)
            if chapter_id in seen_ids:
                raise StructuralError(f"Duplicate chapter id: {chapter_id}")
            declared_parent = entry.get("parentId")
            if declared_parent not in (None, "") and str(declared_parent) != parent_id:
                raise StructuralError(
                    f"Chapter {chapter_id} declares parent {declared_parent!r} "
                    f"but is nested under {parent_id!r}."
                )
            seen_ids.add(chapter_id)
            active_objects.add(id(entry))
            children = entry.get("children") or []
            if not isinstance(children, list):
                raise StructuralError(f"Children of chapter {chapter_id} must be a list.")
            for child in children:
                if not isinstance(child, Mapping):
                    raise StructuralError(f"Child of chapter {chapter_id} is not an object.")
            return [entry, chapter_id, depth, parent_id, list(children), []]

        roots: list[Chapter] = []
        for index, root_entry in enumerate(entries, start=1):
            stack = [_frame(root_entry, 0, None)]
            while stack:
                frame = stack[-1]
                entry, chapter_id, depth, parent_id, pending, built = frame
                if len(built) < len(pending):
                    child_entry = pending[len(built)]
                    stack.append(_frame(child_entry, depth + 1, chapter_id))
                    continue
                stack.pop()
                active_objects.discard(id(entry))
                sibling_position = (
                    len(stack[-1][5]) + 1 if stack else index
                )
                title = entry.get("title")
                href = entry.get("href")
                chapter = Chapter(
                    id=chapter_id,
                    title=str(title).strip() if title is not None else chapter_id,
                    order=_coerce_order(entry.get("order"), sibling_position),
                    href=str(href) if href is not None else "",
                    children=tuple(built),
                    level=_coerce_order(entry.get("level"), depth),
                    parent_id=parent_id,
                )
                if stack:
                    stack[-1][5].append(chapter)
                else:
                    roots.append(chapter)
        return cls(roots)

    @property
    def roots(self) -> tuple[Chapter, ...]:
        return self._roots

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, chapter_id: object) -> bool:
        return chapter_id in self._by_id

    def __iter__(self) -> Iterator[Chapter]:
        for chapter, _ in self.walk():
            yield chapter

    def walk(self) -> Iterator[tuple[Chapter, int]]:
        """Yield ``(chapter, depth)`` pairs in document order."""
        stack: list[tuple[Chapter, int]] = [(chapter, 0) for chapter in reversed(self._roots)]
        while stack:
            chapter, depth = stack.pop()
            yield chapter, depth
            for child in reversed(chapter.children):
                stack.append((child, depth + 1))

    def find(self, chapter_id: str) -> Chapter | None:
        return self._by_id.get(chapter_id)

    def parent_of(self, chapter_id: str) -> Chapter | None:
        parent_id = self._parents.get(chapter_id)
        if parent_id is None:
            return None
        return self._by_id[parent_id]

    def ancestors(self, chapter_id: str) -> list[Chapter]:
        chain: list[Chapter] = []
        parent = self.parent_of(chapter_id)
        while parent is not None:
            chain.append(parent)
            parent = self.parent_of(parent.id)
        chain.reverse()
        return chain

    def descendants(self, chapter_id: str) -> list[Chapter]:
        chapter = self._by_id.get(chapter_id)
        if chapter is None:
            return []
        found: list[Chapter] = []
        stack = list(reversed(chapter.children))
        while stack:
            node = stack.pop()
            found.append(node)
            stack.extend(reversed(node.children))
        return found

    def resolve_mode(self, chapter: Chapter, mode: ContentMode | str | None) -> ContentMode:
        """Leaves only have shallow content; expanded collapses to shallow."""
        resolved = ContentMode.parse(mode)
        if resolved is ContentMode.EXPANDED and not chapter.has_children:
            return ContentMode.SHALLOW
        return resolved

    def visible_rows(self, expansion: "ExpansionState | Iterable[str]") -> list[TocRow]:
        expanded_ids = expansion if isinstance(expansion, ExpansionState) else set(expansion)
        rows: list[TocRow] = []
        stack: list[tuple[Chapter, int]] = [(chapter, 0) for chapter in reversed(self._roots)]
        while stack:
            chapter, depth = stack.pop()
            is_open = chapter.has_children and chapter.id in expanded_ids
            rows.append(
                TocRow(
                    chapter=chapter,
                    depth=depth,
                    expandable=chapter.has_children,
                    expanded=is_open,
                )
            )
            if is_open:
                for child in reversed(chapter.children):
                    stack.append((child, depth + 1))
        return rows


@dataclass
class ExpansionState:
    """Chapter ids currently expanded in a table-of-contents view."""

    expanded: set[str] = field(default_factory=set)

    def __contains__(self, chapter_id: object) -> bool:
        return chapter_id in self.expanded

    def is_expanded(self, chapter_id: str) -> bool:
        return chapter_id in self.expanded

    def expand(self, chapter_id: str) -> None:
        self.expanded.add(chapter_id)

    def collapse(self, chapter_id: str) -> None:
        self.expanded.discard(chapter_id)

    def toggle(self, chapter_id: str) -> bool:
        if chapter_id in self.expanded:
            self.expanded.discard(chapter_id)
            return False
        self.expanded.add(chapter_id)
        return True

    def reveal(self, tree: ChapterTree, chapter_id: str) -> None:
        for ancestor in tree.ancestors(chapter_id):
            self.expanded.add(ancestor.id)

    def expand_all(self, tree: ChapterTree) -> None:
        self.expanded = {chapter.id for chapter in tree if chapter.has_children}

    def reset(self) -> None:
        self.expanded.clear()


__all__ = [
    "Chapter",
    "ChapterTree",
    "ContentMode",
    "ExpansionState",
    "StructuralError",
    "TocRow",
]
