from __future__ import annotations

from pathlib import Path

import pytest

from bookbrief.settings import (
    CONFIG_SHAPE_CURRENT,
    CONFIG_SHAPE_KNOWLEDGE,
    CONFIG_SHAPE_LEGACY,
    AIConfig,
    ConfigSchemaError,
    load_client_config,
)


def test_client_config_precedence(tmp_path) -> None:
    env = {
        "BOOKBRIEF_API_BASE_URL": "http://env:9000/api/",
        "BOOKBRIEF_STORE": str(tmp_path / "env.json"),
        "BOOKBRIEF_TIMEOUT": "12",
    }
    config = load_client_config(env)
    assert config.api_base_url == "http://env:9000/api"
    assert config.store_path == tmp_path / "env.json"
    assert config.timeout == 12.0
    assert config.mmdc_path == "mmdc"

    override = load_client_config(env, api_base_url="http://cli/api", timeout=3)
    assert override.api_base_url == "http://cli/api"
    assert override.timeout == 3


def test_client_config_defaults_and_bad_timeout() -> None:
    config = load_client_config({"BOOKBRIEF_TIMEOUT": "soon"})
    assert config.api_base_url == "http://localhost:3001/api"
    assert config.timeout == 30.0
    assert config.store_path == Path("~/.bookbrief/local-store.json").expanduser()


def test_current_shape_round_trip_and_masking() -> None:
    payload = {
        "apiEndpoint": "https://llm.example/v1",
        "apiKey": "sk-abcdefghijkl",
        "modelName": "gpt-4o",
        "prompt": "Summarize.",
        "defaultRatio": 0.4,
    }
    config = AIConfig.from_payload(payload)
    assert config.shape == CONFIG_SHAPE_CURRENT
    assert config.to_payload() == payload
    items = dict(config.display_items())
    assert items["apiKey"].startswith("sk-") and items["apiKey"].endswith("ijkl")
    assert "abcdefgh" not in items["apiKey"]
    assert items["defaultRatio"] == "0.4"


def test_knowledge_and_legacy_shapes_are_detected() -> None:
    knowledge = AIConfig.from_payload({"baseUrl": "https://kb", "knowledgeModelId": "km-1"})
    assert knowledge.shape == CONFIG_SHAPE_KNOWLEDGE
    assert knowledge.to_payload()["baseUrl"] == "https://kb"

    legacy = AIConfig.from_payload({"model": "gpt-3.5", "temperature": 0.7, "maxTokens": 512})
    assert legacy.shape == CONFIG_SHAPE_LEGACY
    assert legacy.to_payload() == {"model": "gpt-3.5", "temperature": 0.7, "maxTokens": 512}

    with pytest.raises(ConfigSchemaError):
        AIConfig.from_payload({"unrelated": True})


def test_out_of_range_default_ratio_falls_back() -> None:
    config = AIConfig.from_payload({"apiEndpoint": "x", "defaultRatio": 5})
    assert config.default_ratio == 0.3


def test_apply_updates_validates_fields() -> None:
    config = AIConfig.from_payload({"apiEndpoint": "x", "modelName": "a"})
    updated = config.apply_updates({"modelName": "b", "defaultRatio": "0.5"})
    assert updated.model_name == "b"
    assert updated.default_ratio == 0.5
    assert updated.shape == CONFIG_SHAPE_CURRENT

    with pytest.raises(ConfigSchemaError):
        config.apply_updates({"temperature": "0.2"})
    with pytest.raises(ConfigSchemaError):
        config.apply_updates({"defaultRatio": "0.95"})
    with pytest.raises(ConfigSchemaError):
        config.apply_updates({"defaultRatio": "lots"})
