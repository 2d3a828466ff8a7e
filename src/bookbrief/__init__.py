from .api import (
    BackendClient,
    BackendResponseError,
    BackendUnavailableError,
    FetchError,
)
from .chapters import Chapter, ChapterTree, ContentMode, ExpansionState, StructuralError
from .diagrams import DiagramRenderError, MermaidCliEngine
from .marks import LocalStore, SummaryMarkRegistry
from .reader import ReaderSession
from .render import MarkdownDiagramRenderer, split_segments
from .summarize import (
    SummarizationParameters,
    SummarizationSession,
    SummaryArtifact,
    ValidationError,
)

__all__ = [
    "BackendClient",
    "BackendResponseError",
    "BackendUnavailableError",
    "Chapter",
    "ChapterTree",
    "ContentMode",
    "DiagramRenderError",
    "ExpansionState",
    "FetchError",
    "LocalStore",
    "MarkdownDiagramRenderer",
    "MermaidCliEngine",
    "ReaderSession",
    "StructuralError",
    "SummarizationParameters",
    "SummarizationSession",
    "SummaryArtifact",
    "SummaryMarkRegistry",
    "ValidationError",
    "split_segments",
]
