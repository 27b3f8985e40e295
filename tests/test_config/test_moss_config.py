from pathlib import Path

import pytest

import moss.config as config_module
from moss.config import (
    CONFIG_DIR_NAME,
    Config,
    environment_status,
    find_config_dir,
    mask_secret,
)
from moss.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("OPENROUTER_API_KEY", "OPENAI_API_KEY", "OR_API_KEY", "OPENROUTER_BASE_URL", "OPENAI_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


def test_find_config_dir_searches_upward(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(config_module, "DEFAULT_HOME_CONFIG_DIR", tmp_path / "home" / CONFIG_DIR_NAME)
    (tmp_path / CONFIG_DIR_NAME).mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_config_dir(nested) == (tmp_path / CONFIG_DIR_NAME).resolve()


def test_find_config_dir_falls_back_to_home_then_creates(monkeypatch, tmp_path: Path):
    home = tmp_path / "home" / CONFIG_DIR_NAME
    monkeypatch.setattr(config_module, "DEFAULT_HOME_CONFIG_DIR", home)
    project = tmp_path / "project"
    project.mkdir()

    created = find_config_dir(project)
    assert created == project.resolve() / CONFIG_DIR_NAME
    assert created.is_dir()

    other = tmp_path / "other"
    other.mkdir()
    home.mkdir(parents=True)
    assert find_config_dir(other) == home


def test_load_reads_yaml_from_config_dir(tmp_path: Path):
    (tmp_path / "config.yml").write_text(
        "model:\n  model: openai/gpt-4o-mini\n  temperature: 0.1\nlock:\n  timeout_ms: 250\n",
        encoding="utf-8",
    )

    cfg = Config.load(tmp_path)

    assert cfg.config_dir == tmp_path
    assert cfg.model.model == "openai/gpt-4o-mini"
    assert cfg.model.temperature == 0.1
    assert cfg.model.max_tokens == 32000
    assert cfg.lock.timeout_ms == 250
    assert cfg.memory_path == tmp_path / "memory.jsonl"


def test_invalid_yaml_falls_back_to_defaults(tmp_path: Path):
    (tmp_path / "config.yml").write_text("model: [unclosed\n", encoding="utf-8")

    cfg = Config.load(tmp_path)

    assert cfg.model.model == "anthropic/claude-sonnet-4"


def test_environment_overrides(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("MOSS_MODEL__MODEL", "meta/llama")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-from-env")

    cfg = Config.load(tmp_path)

    assert cfg.model.model == "meta/llama"
    assert cfg.require_api_key() == "sk-from-env"
    assert cfg.model.base_url == config_module.OPENROUTER_BASE_URL


def test_require_api_key_raises_without_key(tmp_path: Path):
    cfg = Config.load(tmp_path)

    with pytest.raises(ConfigurationError) as exc_info:
        cfg.require_api_key()

    assert "OPENROUTER_API_KEY" in str(exc_info.value)


def test_manifest_path_resolution(tmp_path: Path):
    cfg = Config.load(tmp_path)
    assert cfg.resolved_manifest_path() == tmp_path / "mcp.json"

    cfg.mcp.manifest = "servers/tools.json"
    assert cfg.resolved_manifest_path() == tmp_path / "servers" / "tools.json"

    absolute = tmp_path / "elsewhere.json"
    cfg.mcp.manifest = str(absolute)
    assert cfg.resolved_manifest_path() == absolute


def test_save_round_trips(tmp_path: Path):
    cfg = Config.load(tmp_path)
    cfg.model.model = "x/y"
    cfg.save()

    assert Config.load(tmp_path).model.model == "x/y"


def test_mask_secret():
    assert mask_secret("") == "Not set"
    assert mask_secret("short") == "*****"
    assert mask_secret("sk-or-1234567890") == "sk-o********7890"


def test_environment_status_masks_key_and_warns(tmp_path: Path):
    cfg = Config.load(tmp_path)
    cfg.model.api_key = "abcdefghijkl"

    rows = dict(environment_status(cfg))

    assert rows["API key"] == "abcd****ijkl"
    assert "Warning" in rows
