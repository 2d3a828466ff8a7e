from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Mapping, Protocol

from .api import BackendResponseError, FetchError

if TYPE_CHECKING:
    from .marks import SummaryMarkRegistry

logger = logging.getLogger(__name__)

MIN_RATIO = 0.1
MAX_RATIO = 0.8
RATIO_STEP = 0.1
DEFAULT_RATIO = 0.3
DEFAULT_LANGUAGE = "english"
SUPPORTED_LANGUAGES = ("english", "russian")

_RATIO_EPSILON = 1e-6


class ValidationError(ValueError):
    """Raised when a summarization request is rejected before it is sent."""


class Summarizer(Protocol):
    def summarize(self, request: Mapping[str, object]) -> dict[str, object]: ...


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_ratio(value: float) -> float:
    """Snap a user-supplied ratio onto the supported slider positions."""
    if not isinstance(value, (int, float)) or math.isnan(value):
        return DEFAULT_RATIO
    stepped = round_half_up(float(value) / RATIO_STEP) * RATIO_STEP
    return round(min(MAX_RATIO, max(MIN_RATIO, stepped)), 1)


def normalize_language(value: str | None) -> str:
    if value is None:
        return DEFAULT_LANGUAGE
    return value.strip().lower()


@dataclass(frozen=True, slots=True)
class SummarizationParameters:
    compression_ratio: float = DEFAULT_RATIO
    language: str = DEFAULT_LANGUAGE
    custom_prompt: str | None = None

    def validate(self) -> None:
        ratio = self.compression_ratio
        if isinstance(ratio, bool) or not isinstance(ratio, (int, float)) or math.isnan(ratio):
            raise ValidationError("Compression ratio must be a number.")
        if ratio < MIN_RATIO - _RATIO_EPSILON or ratio > MAX_RATIO + _RATIO_EPSILON:
            raise ValidationError(
                f"Compression ratio {ratio} is outside the supported range "
                f"{MIN_RATIO}-{MAX_RATIO}."
            )
        steps = ratio / RATIO_STEP
        if abs(steps - round(steps)) > _RATIO_EPSILON:
            raise ValidationError(
                f"Compression ratio {ratio} must be a multiple of {RATIO_STEP}."
            )
        if normalize_language(self.language) not in SUPPORTED_LANGUAGES:
            raise ValidationError(
                f"Unsupported language {self.language!r}; "
                f"choose one of: {', '.join(SUPPORTED_LANGUAGES)}."
            )

    def normalized(self) -> "SummarizationParameters":
        prompt = self.custom_prompt.strip() if self.custom_prompt else None
        return replace(
            self,
            compression_ratio=round(float(self.compression_ratio), 1),
            language=normalize_language(self.language),
            custom_prompt=prompt or None,
        )

    def to_request(self, content: str) -> dict[str, object]:
        params = self.normalized()
        request: dict[str, object] = {
            "content": content,
            "ratio": params.compression_ratio,
            "language": params.language,
        }
        if params.custom_prompt:
            request["customPrompt"] = params.custom_prompt
        return request


@dataclass(frozen=True, slots=True)
class SummaryArtifact:
    summary_text: str
    original_token_count: int
    summary_token_count: int
    actual_ratio: float

    @property
    def compression_percent(self) -> int:
        return round_half_up(self.actual_ratio * 100)

    @property
    def compression_label(self) -> str:
        return f"{self.compression_percent}% compressed"

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "SummaryArtifact":
        summary = payload.get("summary")
        if summary is None:
            summary = ""
        if not isinstance(summary, str):
            raise BackendResponseError("Summarization response has a non-text summary")
        original = _as_count(payload.get("originalTokens"))
        produced = _as_count(payload.get("summaryTokens"))
        ratio = payload.get("actualRatio")
        if isinstance(ratio, (int, float)) and not isinstance(ratio, bool):
            actual_ratio = float(ratio)
        else:
            actual_ratio = produced / original if original else 0.0
        return cls(
            summary_text=summary,
            original_token_count=original,
            summary_token_count=produced,
            actual_ratio=actual_ratio,
        )


def _as_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return 0


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class SummarizationSession:
    """Compression requests for a single chapter selection."""

    def __init__(
        self,
        chapter_id: str,
        summarizer: Summarizer,
        registry: "SummaryMarkRegistry",
        parameters: SummarizationParameters | None = None,
    ) -> None:
        self.chapter_id = chapter_id
        self.parameters = parameters or SummarizationParameters()
        self.status = SessionStatus.IDLE
        self.artifact: SummaryArtifact | None = None
        self.error: Exception | None = None
        self._summarizer = summarizer
        self._registry = registry

    def can_summarize(self, text: str | None) -> bool:
        if self.status is SessionStatus.RUNNING:
            return False
        if not text or not text.strip():
            return False
        try:
            self.parameters.validate()
        except ValidationError:
            return False
        return True

    async def summarize(
        self,
        text: str,
        parameters: SummarizationParameters | None = None,
    ) -> SummaryArtifact:
        params = parameters or self.parameters
        if not text or not text.strip():
            raise ValidationError("Cannot summarize empty content.")
        params.validate()
        params = params.normalized()
        self.parameters = params

        self.status = SessionStatus.RUNNING
        self.error = None
        request = params.to_request(text)
        loop = asyncio.get_running_loop()
        try:
            payload = await loop.run_in_executor(None, self._summarizer.summarize, request)
            artifact = SummaryArtifact.from_payload(payload)
        except FetchError as exc:
            logger.warning("Summarization failed for chapter %s: %s", self.chapter_id, exc)
            self.status = SessionStatus.FAILED
            self.artifact = None
            self.error = exc
            raise
        self._registry.mark(self.chapter_id)
        self.artifact = artifact
        self.status = SessionStatus.DONE
        return artifact


__all__ = [
    "DEFAULT_LANGUAGE",
    "DEFAULT_RATIO",
    "MAX_RATIO",
    "MIN_RATIO",
    "RATIO_STEP",
    "SUPPORTED_LANGUAGES",
    "SessionStatus",
    "SummarizationParameters",
    "SummarizationSession",
    "SummaryArtifact",
    "Summarizer",
    "ValidationError",
    "clamp_ratio",
    "normalize_language",
    "round_half_up",
]
