"""Tests for configuration loading (``cortexmem.config``)."""

from __future__ import annotations

import json
import logging
from dataclasses import replace

import pytest

from cortexmem.config import CortexConfig, build_provider, load_config, open_store
from cortexmem.embeddings import OllamaEmbedding
from cortexmem.errors import ValidationError

# ------------------------------------------------------------------
# Defaults and validation
# ------------------------------------------------------------------


def test_defaults_are_valid():
    cfg = CortexConfig()
    assert cfg.validate() == []
    assert cfg.embedding == "auto"
    assert cfg.db_path.endswith("memories.db")
    assert cfg.global_mode is False


@pytest.mark.parametrize(
    "changes",
    [
        {"embedding": "word2vec"},
        {"embedding_timeout": 0},
        {"embedding_timeout": True},
        {"log_level": "LOUD"},
        {"db_path": ""},
        {"global_mode": "yes"},
        {"password": 1234},
    ],
)
def test_invalid_values(changes):
    cfg = replace(CortexConfig(), **changes)
    assert cfg.validate()
    with pytest.raises(ValidationError, match="Config validation failed"):
        cfg.check()


def test_to_dict_masks_secrets():
    data = CortexConfig(password="pw", openai_api_key="sk-x").to_dict()
    assert data["password"] == "***"
    assert data["openai_api_key"] == "***"
    assert CortexConfig().to_dict()["password"] is None


# ------------------------------------------------------------------
# Environment
# ------------------------------------------------------------------


def test_from_env():
    cfg = CortexConfig.from_env(
        {
            "CORTEX_DB_PATH": "/tmp/x.db",
            "CORTEX_GLOBAL": "true",
            "CORTEX_EMBEDDING": "None",
            "CORTEX_EMBEDDING_TIMEOUT": "2.5",
            "CORTEX_LOG_LEVEL": "debug",
            "OPENAI_API_KEY": "sk-env",
            "CORTEX_PROJECT_ID": "",
        }
    )
    assert cfg.db_path == "/tmp/x.db"
    assert cfg.global_mode is True
    assert cfg.embedding == "none"
    assert cfg.embedding_timeout == 2.5
    assert cfg.log_level == "DEBUG"
    assert cfg.openai_api_key == "sk-env"
    assert cfg.project_id is None


def test_from_env_bad_number():
    with pytest.raises(ValidationError):
        CortexConfig.from_env({"CORTEX_EMBEDDING_TIMEOUT": "soon"})


# ------------------------------------------------------------------
# File loading
# ------------------------------------------------------------------


def test_load_config_overlays_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"embedding": "none", "project_id": "from-file"}))
    cfg = load_config(path, environ={"CORTEX_PROJECT_ID": "from-env", "CORTEX_GLOBAL": "1"})
    assert cfg.project_id == "from-file"
    assert cfg.embedding == "none"
    # Environment values not in the file survive.
    assert cfg.global_mode is True


def test_load_config_path_from_environment(tmp_path):
    path = tmp_path / "alt.json"
    path.write_text(json.dumps({"log_level": "INFO"}))
    cfg = load_config(environ={"CORTEX_CONFIG": str(path)})
    assert cfg.log_level == "INFO"


def test_missing_file_uses_environment(tmp_path):
    cfg = load_config(tmp_path / "absent.json", environ={"CORTEX_PROJECT_ID": "p"})
    assert cfg.project_id == "p"


def test_unreadable_file_is_ignored(tmp_path, caplog):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with caplog.at_level(logging.WARNING, logger="cortexmem.config"):
        cfg = load_config(path, environ={})
    assert cfg == CortexConfig()
    assert "Could not read config file" in caplog.text


def test_non_object_file_is_ignored(tmp_path, caplog):
    path = tmp_path / "list.json"
    path.write_text("[1, 2]")
    with caplog.at_level(logging.WARNING, logger="cortexmem.config"):
        assert load_config(path, environ={}) == CortexConfig()
    assert "JSON object" in caplog.text


def test_unknown_keys_warn(tmp_path, caplog):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"colour": "blue", "embedding": "none"}))
    with caplog.at_level(logging.WARNING, logger="cortexmem.config"):
        cfg = load_config(path, environ={})
    assert cfg.embedding == "none"
    assert "colour" in caplog.text


def test_invalid_file_value_raises(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"embedding": "magic"}))
    with pytest.raises(ValidationError):
        load_config(path, environ={})


# ------------------------------------------------------------------
# Factories
# ------------------------------------------------------------------


def test_open_store_without_embeddings(tmp_path):
    cfg = CortexConfig(db_path=str(tmp_path / "db.sqlite"), project_id="p", embedding="none")
    store = open_store(cfg)
    try:
        assert store.project_id == "p"
        assert store.embedding_provider is None
        store.add("hello", type="note", source="test")
        assert store.stats()["total"] == 1
    finally:
        store.close()


def test_open_store_with_password(tmp_path):
    cfg = CortexConfig(
        db_path=str(tmp_path / "db.sqlite"), project_id="p", embedding="none", password="pw"
    )
    store = open_store(cfg)
    try:
        assert store.encrypted is True
    finally:
        store.close()


def test_unavailable_explicit_provider_degrades(monkeypatch, caplog):
    monkeypatch.setattr(OllamaEmbedding, "is_available", lambda self: False)
    with caplog.at_level(logging.WARNING, logger="cortexmem.config"):
        assert build_provider(CortexConfig(embedding="ollama")) is None
    assert "not available" in caplog.text


def test_available_explicit_provider(monkeypatch):
    monkeypatch.setattr(OllamaEmbedding, "is_available", lambda self: True)
    provider = build_provider(CortexConfig(embedding="ollama", ollama_model="custom"))
    assert isinstance(provider, OllamaEmbedding)
    assert provider.model == "custom"
