from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .api import DEFAULT_API_BASE_URL
from .summarize import DEFAULT_RATIO, MAX_RATIO, MIN_RATIO

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path("~/.bookbrief/local-store.json")
DEFAULT_MMDC_PATH = "mmdc"
DEFAULT_TIMEOUT = 30.0

CONFIG_SHAPE_CURRENT = "current"
CONFIG_SHAPE_KNOWLEDGE = "knowledge"
CONFIG_SHAPE_LEGACY = "legacy"

_SHAPE_FIELDS: dict[str, tuple[str, ...]] = {
    CONFIG_SHAPE_CURRENT: ("apiEndpoint", "apiKey", "modelName", "prompt", "defaultRatio"),
    CONFIG_SHAPE_KNOWLEDGE: (
        "baseUrl",
        "knowledgeModelId",
        "apiKey",
        "modelName",
        "prompt",
        "defaultRatio",
    ),
    CONFIG_SHAPE_LEGACY: ("model", "temperature", "maxTokens", "openaiApiKey"),
}


class ConfigSchemaError(ValueError):
    """Raised when a backend configuration payload matches no known shape."""


@dataclass(slots=True)
class ClientConfig:
    api_base_url: str = DEFAULT_API_BASE_URL
    store_path: Path = DEFAULT_STORE_PATH
    mmdc_path: str = DEFAULT_MMDC_PATH
    timeout: float = DEFAULT_TIMEOUT
    cache_summaries: bool = False


def _env_timeout(raw: str | None) -> float:
    if raw is None:
        return DEFAULT_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric BOOKBRIEF_TIMEOUT=%r", raw)
        return DEFAULT_TIMEOUT
    if not math.isfinite(value) or value <= 0:
        logger.warning("Ignoring non-positive BOOKBRIEF_TIMEOUT=%r", raw)
        return DEFAULT_TIMEOUT
    return value


def load_client_config(
    env: Mapping[str, str] | None = None,
    *,
    api_base_url: str | None = None,
    store_path: Path | str | None = None,
    mmdc_path: str | None = None,
    timeout: float | None = None,
    cache_summaries: bool | None = None,
) -> ClientConfig:
    """Explicit arguments win over environment variables, which win over defaults."""
    if env is None:
        env = os.environ
    base_url = api_base_url or env.get("BOOKBRIEF_API_BASE_URL") or DEFAULT_API_BASE_URL
    store = store_path or env.get("BOOKBRIEF_STORE") or DEFAULT_STORE_PATH
    return ClientConfig(
        api_base_url=base_url.strip().rstrip("/"),
        store_path=Path(store).expanduser(),
        mmdc_path=mmdc_path or env.get("BOOKBRIEF_MMDC") or DEFAULT_MMDC_PATH,
        timeout=timeout if timeout is not None else _env_timeout(env.get("BOOKBRIEF_TIMEOUT")),
        cache_summaries=bool(cache_summaries),
    )


def _optional_str(value: object) -> str | None:
    if isinstance(value, str):
        return value
    return None


def _default_ratio(value: object) -> float:
    if value is None:
        return DEFAULT_RATIO
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        logger.warning("Backend defaultRatio %r is not a number; using %s", value, DEFAULT_RATIO)
        return DEFAULT_RATIO
    if not MIN_RATIO <= float(value) <= MAX_RATIO:
        logger.warning(
            "Backend defaultRatio %s is outside %s-%s; using %s",
            value,
            MIN_RATIO,
            MAX_RATIO,
            DEFAULT_RATIO,
        )
        return DEFAULT_RATIO
    return float(value)


def detect_config_shape(payload: Mapping[str, object]) -> str:
    if "apiEndpoint" in payload:
        return CONFIG_SHAPE_CURRENT
    if "baseUrl" in payload or "knowledgeModelId" in payload:
        return CONFIG_SHAPE_KNOWLEDGE
    if any(key in payload for key in ("openaiApiKey", "temperature", "maxTokens", "model")):
        return CONFIG_SHAPE_LEGACY
    if any(key in payload for key in ("apiKey", "modelName", "prompt", "defaultRatio")):
        return CONFIG_SHAPE_CURRENT
    raise ConfigSchemaError("Configuration payload matches no known shape.")


@dataclass(slots=True)
class AIConfig:
    shape: str
    api_endpoint: str | None = None
    api_key: str | None = None
    model_name: str | None = None
    prompt: str | None = None
    default_ratio: float = DEFAULT_RATIO
    knowledge_model_id: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extras: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> "AIConfig":
        if not isinstance(payload, Mapping):
            raise ConfigSchemaError("Configuration payload must be an object.")
        return cls._parse(detect_config_shape(payload), payload)

    @classmethod
    def _parse(cls, shape: str, payload: Mapping[str, object]) -> "AIConfig":
        known = set(_SHAPE_FIELDS[shape])
        extras = {key: value for key, value in payload.items() if key not in known}
        if shape == CONFIG_SHAPE_LEGACY:
            temperature = payload.get("temperature")
            max_tokens = payload.get("maxTokens")
            return cls(
                shape=shape,
                api_key=_optional_str(payload.get("openaiApiKey")),
                model_name=_optional_str(payload.get("model")),
                temperature=float(temperature)
                if isinstance(temperature, (int, float)) and not isinstance(temperature, bool)
                else None,
                max_tokens=max_tokens
                if isinstance(max_tokens, int) and not isinstance(max_tokens, bool)
                else None,
                extras=extras,
            )
        endpoint_key = "apiEndpoint" if shape == CONFIG_SHAPE_CURRENT else "baseUrl"
        return cls(
            shape=shape,
            api_endpoint=_optional_str(payload.get(endpoint_key)),
            api_key=_optional_str(payload.get("apiKey")),
            model_name=_optional_str(payload.get("modelName")),
            prompt=_optional_str(payload.get("prompt")),
            default_ratio=_default_ratio(payload.get("defaultRatio")),
            knowledge_model_id=_optional_str(payload.get("knowledgeModelId")),
            extras=extras,
        )

    def to_payload(self) -> dict[str, object]:
        """Serialize using only the fields of the shape this config was read in."""
        if self.shape == CONFIG_SHAPE_LEGACY:
            payload: dict[str, object] = {
                "model": self.model_name,
                "temperature": self.temperature,
                "maxTokens": self.max_tokens,
                "openaiApiKey": self.api_key,
            }
        elif self.shape == CONFIG_SHAPE_KNOWLEDGE:
            payload = {
                "baseUrl": self.api_endpoint,
                "knowledgeModelId": self.knowledge_model_id,
                "apiKey": self.api_key,
                "modelName": self.model_name,
                "prompt": self.prompt,
                "defaultRatio": self.default_ratio,
            }
        else:
            payload = {
                "apiEndpoint": self.api_endpoint,
                "apiKey": self.api_key,
                "modelName": self.model_name,
                "prompt": self.prompt,
                "defaultRatio": self.default_ratio,
            }
        return {key: value for key, value in payload.items() if value is not None}

    def masked_api_key(self) -> str:
        key = self.api_key or ""
        if not key:
            return ""
        if len(key) <= 8:
            return "*" * len(key)
        return f"{key[:3]}{'*' * (len(key) - 7)}{key[-4:]}"

    def display_items(self) -> list[tuple[str, str]]:
        items: list[tuple[str, str]] = [("shape", self.shape)]
        if self.shape == CONFIG_SHAPE_LEGACY:
            items.extend(
                [
                    ("model", self.model_name or ""),
                    ("temperature", "" if self.temperature is None else f"{self.temperature:g}"),
                    ("maxTokens", "" if self.max_tokens is None else str(self.max_tokens)),
                    ("apiKey", self.masked_api_key()),
                ]
            )
            return items
        items.append(("apiEndpoint", self.api_endpoint or ""))
        if self.shape == CONFIG_SHAPE_KNOWLEDGE:
            items.append(("knowledgeModelId", self.knowledge_model_id or ""))
        items.extend(
            [
                ("apiKey", self.masked_api_key()),
                ("modelName", self.model_name or ""),
                ("prompt", self.prompt or ""),
                ("defaultRatio", f"{self.default_ratio:g}"),
            ]
        )
        return items

    def apply_updates(self, updates: Mapping[str, str]) -> "AIConfig":
        """Apply ``field=value`` edits given with wire field names."""
        allowed = set(_SHAPE_FIELDS[self.shape])
        unknown = sorted(set(updates) - allowed)
        if unknown:
            raise ConfigSchemaError(
                f"Unknown field(s) for the {self.shape} configuration: {', '.join(unknown)}"
            )
        payload = self.to_payload()
        for key, raw in updates.items():
            if key in {"defaultRatio", "temperature"}:
                try:
                    payload[key] = float(raw)
                except ValueError as exc:
                    raise ConfigSchemaError(f"{key} must be a number") from exc
            elif key == "maxTokens":
                try:
                    payload[key] = int(raw)
                except ValueError as exc:
                    raise ConfigSchemaError("maxTokens must be an integer") from exc
            else:
                payload[key] = raw
        if "defaultRatio" in updates:
            ratio = payload["defaultRatio"]
            if not MIN_RATIO <= float(ratio) <= MAX_RATIO:  # type: ignore[arg-type]
                raise ConfigSchemaError(
                    f"defaultRatio must lie between {MIN_RATIO} and {MAX_RATIO}"
                )
        return AIConfig._parse(self.shape, payload)


__all__ = [
    "AIConfig",
    "CONFIG_SHAPE_CURRENT",
    "CONFIG_SHAPE_KNOWLEDGE",
    "CONFIG_SHAPE_LEGACY",
    "ClientConfig",
    "ConfigSchemaError",
    "DEFAULT_MMDC_PATH",
    "DEFAULT_STORE_PATH",
    "DEFAULT_TIMEOUT",
    "detect_config_shape",
    "load_client_config",
]
