"""Tests for config loading (global + project YAML, env overrides)."""
from __future__ import annotations

from unittest.mock import patch

import pytest
import yaml

from btca.engine.config import BtcaConfig
from btca.engine.errors import ConfigError, ResourceNotConfiguredError
from btca.engine.resources import GitResource, LocalResource, resource_from_dict
from btca.engine.yaml_config import load_config


@pytest.fixture
def global_data_dir(tmp_path):
    data = tmp_path / "global-data"
    with patch("btca.engine.yaml_config.GLOBAL_DATA_DIR", data):
        yield data


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


def test_missing_global_config_is_created_with_defaults(tmp_path, global_data_dir):
    global_file = tmp_path / "cfg" / "btca.yaml"
    cwd = tmp_path / "work"
    cwd.mkdir()

    config = load_config(cwd, global_file, apply_env=False)

    assert global_file.is_file()
    written = yaml.safe_load(global_file.read_text(encoding="utf-8"))
    assert written["provider"] == "opencode"
    assert {"svelte", "tailwindcss", "nextjs"} <= set(config.resources)
    assert config.data_directory == str(global_data_dir)
    assert config.threads_db_path == str(global_data_dir / "threads.db")
    assert config.project_config is False


def test_project_config_overrides_and_merges(tmp_path, global_data_dir):
    global_file = tmp_path / "cfg" / "btca.yaml"
    _write(global_file, {
        "provider": "opencode",
        "model": "claude-haiku-4-5",
        "resources": [
            {"name": "svelte", "type": "git", "url": "https://github.com/sveltejs/svelte.dev",
             "branch": "main", "searchPath": "apps/svelte.dev"},
            {"name": "effect", "type": "git", "url": "https://github.com/Effect-TS/effect.git"},
        ],
    })
    cwd = tmp_path / "project"
    local_dir = tmp_path / "notes"
    local_dir.mkdir()
    _write(cwd / "btca.yaml", {
        "model": "claude-sonnet-4-5",
        "resources": [
            {"name": "svelte", "type": "git", "url": "https://github.com/sveltejs/svelte",
             "branch": "next"},
            {"name": "notes", "type": "local", "path": str(local_dir)},
        ],
    })

    config = load_config(cwd, global_file, apply_env=False)

    assert config.provider == "opencode"
    assert config.model == "claude-sonnet-4-5"
    assert config.resource_names() == ["effect", "notes", "svelte"]
    svelte = config.get_resource("svelte")
    # Replaced entirely, not merged field by field
    assert svelte.branch == "next"
    assert svelte.search_paths == ()
    assert config.get_resource("effect").url == "https://github.com/Effect-TS/effect"
    assert isinstance(config.get_resource("notes"), LocalResource)
    assert config.project_config is True
    assert config.data_directory == str(cwd / ".btca")


def test_invalid_resource_in_config_raises(tmp_path, global_data_dir):
    global_file = tmp_path / "cfg" / "btca.yaml"
    _write(global_file, {
        "resources": [{"name": "bad", "type": "git", "url": "http://github.com/a/b"}],
    })
    with pytest.raises(ConfigError) as exc_info:
        load_config(tmp_path, global_file, apply_env=False)
    assert "HTTPS" in str(exc_info.value)


def test_malformed_yaml_raises_config_error(tmp_path, global_data_dir):
    global_file = tmp_path / "cfg" / "btca.yaml"
    global_file.parent.mkdir(parents=True)
    global_file.write_text("resources: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path, global_file, apply_env=False)


def test_env_overrides(tmp_path, global_data_dir, monkeypatch):
    global_file = tmp_path / "cfg" / "btca.yaml"
    _write(global_file, {"resources": []})
    monkeypatch.setenv("BTCA_MODEL", "claude-opus-4-1")
    monkeypatch.setenv("BTCA_DATA_DIR", str(tmp_path / "elsewhere"))
    monkeypatch.setenv("BTCA_PORT", "9911")

    config = load_config(tmp_path, global_file)

    assert config.model == "claude-opus-4-1"
    assert config.port == 9911
    assert config.collections_directory == str(tmp_path / "elsewhere" / "collections")


@pytest.mark.parametrize("var, value", [
    ("BTCA_PROVIDER", "open code; rm -rf"),
    ("BTCA_MODEL", ""),
    ("BTCA_PORT", "eighty"),
    ("BTCA_GIT_TIMEOUT_SECONDS", "10m"),
    ("BTCA_AGENT_START_ATTEMPTS", "1.5"),
])
def test_bad_env_override_is_config_error(monkeypatch, var, value):
    monkeypatch.setenv(var, value)
    with pytest.raises(ConfigError) as exc_info:
        BtcaConfig().apply_env()
    assert var in str(exc_info.value)


@pytest.mark.parametrize("entry, field", [
    ({"name": "svelte", "url": "https://github.com/sveltejs/svelte", "notes": 123}, "specialNotes"),
    ({"name": "svelte", "url": "https://github.com/sveltejs/svelte", "searchPath": ["docs"]}, "searchPath"),
    ({"name": "svelte", "url": "https://github.com/sveltejs/svelte", "searchPaths": ["docs", 7]}, "searchPaths"),
    ({"name": "docs", "type": "local", "path": "/srv/docs", "specialNotes": ["x"]}, "specialNotes"),
])
def test_non_string_resource_fields_are_config_errors(entry, field):
    with pytest.raises(ConfigError) as exc_info:
        resource_from_dict(entry)
    assert field in str(exc_info.value)


def test_get_resource_unknown_lists_available():
    config = BtcaConfig(resources={
        "svelte": GitResource(name="svelte", url="https://github.com/sveltejs/svelte.dev"),
    })
    with pytest.raises(ResourceNotConfiguredError) as exc_info:
        config.get_resource("react")
    assert 'Resource "react" not found in config' in str(exc_info.value)
    assert "svelte" in str(exc_info.value)


def test_resource_from_dict_merges_search_path_keys():
    resource = resource_from_dict({
        "name": "docs",
        "url": "https://github.com/a/b",
        "searchPath": "docs",
        "searchPaths": ["guides", "docs"],
        "specialNotes": "read the guides",
    })
    assert isinstance(resource, GitResource)
    assert resource.search_paths == ("docs", "guides")
    assert resource.notes == "read the guides"
    assert resource.to_dict()["searchPaths"] == ["docs", "guides"]


def test_resource_from_dict_rejects_empty_search_paths():
    with pytest.raises(ConfigError):
        resource_from_dict({"name": "docs", "url": "https://github.com/a/b", "searchPaths": []})
