"""YAML configuration loader.

Two files are read, global first, then project:

1. Global ``~/.config/btca/btca.yaml`` (written with the default
   resources when missing)
2. Project ``./btca.yaml`` in the working directory

Scalar settings from the project file win. Resources are merged by
name; a project definition replaces the global one entirely. When a
project file exists, data lives under ``./.btca``; otherwise under
``~/.local/share/btca``. BTCA_* environment variables apply last.

Example YAML:
    provider: opencode
    model: claude-haiku-4-5

    resources:
      - name: svelte
        type: git
        url: https://github.com/sveltejs/svelte.dev
        branch: main
        searchPath: apps/svelte.dev
        specialNotes: Focus on the content directory.
      - name: notes
        type: local
        path: /home/me/notes

    agent:
      command: opencode
      start_attempts: 10
      startup_timeout_seconds: 15

    git:
      command: git
      timeout_seconds: 600

    server:
      host: 127.0.0.1
      port: 8080
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import (
    CONFIG_FILENAME,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    DEFAULT_RESOURCES,
    GLOBAL_CONFIG_DIR,
    GLOBAL_DATA_DIR,
    PROJECT_DATA_DIR,
    BtcaConfig,
)
from .errors import ConfigError
from .resources import ResourceDefinition, resource_from_dict
from .validation import require, validate_model_name, validate_provider_name

logger = logging.getLogger(__name__)


def global_config_path() -> Path:
    """Return the global config path (~/.config/btca/btca.yaml)."""
    return GLOBAL_CONFIG_DIR / CONFIG_FILENAME


def default_config_dict() -> dict[str, Any]:
    return {
        "provider": DEFAULT_PROVIDER,
        "model": DEFAULT_MODEL,
        "resources": [r.to_dict() for r in DEFAULT_RESOURCES],
    }


def write_default_config(path: Path) -> dict[str, Any]:
    """Create ``path`` holding the default provider, model and resources."""
    data = default_config_dict()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)
    logger.info("write_default_config: created default config at %s", path)
    return data


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("_read_yaml: YAML parse error in %s: %s", path, exc)
        raise ConfigError(str(path), f"YAML parse error: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")
    sections = sorted(raw.keys())
    logger.info(
        "_read_yaml: loaded %s (sections: %s)",
        path, ", ".join(sections) if sections else "(empty)",
    )
    return raw


def _parse_resources(raw: Any, source: str) -> dict[str, ResourceDefinition]:
    """Accept a list of entries or a mapping of name -> entry."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        entries = list(raw.items())
    elif isinstance(raw, list):
        entries = [(None, entry) for entry in raw]
    else:
        raise ConfigError(source, "resources must be a list or a mapping")

    parsed: dict[str, ResourceDefinition] = {}
    for name, entry in entries:
        resource = resource_from_dict(entry, name=name)
        if resource.name in parsed:
            logger.warning(
                "_parse_resources: duplicate resource '%s' in %s; last one wins",
                resource.name, source,
            )
        parsed[resource.name] = resource
    return parsed


def _apply_settings(config: BtcaConfig, raw: dict[str, Any], source: str) -> None:
    if "provider" in raw:
        config.provider = require(validate_provider_name(str(raw["provider"])), "provider")
    if "model" in raw:
        config.model = require(validate_model_name(str(raw["model"])), "model")

    agent = raw.get("agent") or {}
    git = raw.get("git") or {}
    server = raw.get("server") or {}
    for section_name, section in (("agent", agent), ("git", git), ("server", server)):
        if not isinstance(section, dict):
            raise ConfigError(source, f"'{section_name}' must be a mapping")
    try:
        config.agent_command = str(agent.get("command", config.agent_command))
        config.agent_start_attempts = int(
            agent.get("start_attempts", config.agent_start_attempts)
        )
        config.agent_startup_timeout_seconds = float(
            agent.get("startup_timeout_seconds", config.agent_startup_timeout_seconds)
        )
        config.git_command = str(git.get("command", config.git_command))
        config.git_timeout_seconds = float(
            git.get("timeout_seconds", config.git_timeout_seconds)
        )
        config.host = str(server.get("host", config.host))
        config.port = int(server.get("port", config.port))
    except (TypeError, ValueError) as exc:
        raise ConfigError(source, str(exc)) from exc


def load_config(
    cwd: str | Path | None = None,
    global_path: str | Path | None = None,
    *,
    apply_env: bool = True,
) -> BtcaConfig:
    """Load the merged global + project configuration.

    *global_path* overrides the global config location (an explicit
    ``--config`` on the command line).
    """
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    global_file = Path(global_path).expanduser() if global_path else global_config_path()
    project_file = cwd / CONFIG_FILENAME

    logger.info(
        "load_config: global=%s (exists=%s) project=%s (exists=%s)",
        global_file, global_file.is_file(), project_file, project_file.is_file(),
    )

    if global_file.is_file():
        global_raw = _read_yaml(global_file)
    else:
        global_raw = write_default_config(global_file)

    config = BtcaConfig(config_path=str(global_file))
    _apply_settings(config, global_raw, str(global_file))
    resources = _parse_resources(global_raw.get("resources"), str(global_file))

    if project_file.is_file() and project_file.resolve() != global_file.resolve():
        project_raw = _read_yaml(project_file)
        _apply_settings(config, project_raw, str(project_file))
        project_resources = _parse_resources(
            project_raw.get("resources"), str(project_file)
        )
        overridden = sorted(set(resources) & set(project_resources))
        if overridden:
            logger.info(
                "load_config: project resources override global: %s",
                ", ".join(overridden),
            )
        resources.update(project_resources)
        config.project_config = True
        config.config_path = str(project_file)
        config.use_data_directory(cwd / PROJECT_DATA_DIR)
    else:
        config.use_data_directory(GLOBAL_DATA_DIR)

    config.resources = resources

    if apply_env:
        config.apply_env()

    logger.info(
        "load_config: provider=%s model=%s resources=%s data=%s",
        config.provider, config.model,
        ", ".join(sorted(config.resources)) or "(none)",
        config.data_directory,
    )
    return config
