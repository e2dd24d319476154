"""Runtime configuration.

All settings have sensible defaults. Override via BTCA_* env vars;
file-based settings are loaded by yaml_config.load_config().
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError, ResourceNotConfiguredError
from .resources import GitResource, ResourceDefinition
from .validation import validate_model_name, validate_provider_name

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "opencode"
DEFAULT_MODEL = "claude-haiku-4-5"

GLOBAL_CONFIG_DIR = Path.home() / ".config" / "btca"
GLOBAL_DATA_DIR = Path.home() / ".local" / "share" / "btca"
CONFIG_FILENAME = "btca.yaml"
PROJECT_DATA_DIR = ".btca"

DEFAULT_RESOURCES: tuple[ResourceDefinition, ...] = (
    GitResource(
        name="svelte",
        url="https://github.com/sveltejs/svelte.dev",
        branch="main",
        search_paths=("apps/svelte.dev",),
        notes=(
            "This is the svelte docs website repo, not the actual svelte "
            "repo. Focus on the content directory, it has all the markdown "
            "files for the docs."
        ),
    ),
    GitResource(
        name="tailwindcss",
        url="https://github.com/tailwindlabs/tailwindcss.com",
        branch="main",
        search_paths=("src/docs",),
        notes=(
            "This is the tailwindcss docs website repo, not the actual "
            "tailwindcss repo. Use the docs to answer questions about "
            "tailwindcss."
        ),
    ),
    GitResource(
        name="nextjs",
        url="https://github.com/vercel/next.js",
        branch="canary",
        search_paths=("docs",),
        notes=(
            "These are the docs for the next.js framework, not the actual "
            "next.js repo. Use the docs to answer questions about next.js."
        ),
    ),
)


def _env_name(var: str, default: str, validator) -> str:
    raw = os.getenv(var)
    if raw is None:
        return default
    result = validator(raw)
    if not result.valid:
        raise ConfigError(f"env {var}", result.error or "invalid value")
    return result.value


def _env_number(var: str, default, cast):
    raw = os.getenv(var)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"env {var}", f"expected a number, got {raw!r}") from None


@dataclass
class BtcaConfig:
    """btca runtime configuration."""

    # Model used by the agent for every question
    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL

    # Configured resources, keyed by name. Later sources replace
    # earlier definitions entirely.
    resources: dict[str, ResourceDefinition] = field(default_factory=dict)

    # Storage
    data_directory: str = str(GLOBAL_DATA_DIR)
    resources_directory: str = str(GLOBAL_DATA_DIR / "resources")
    collections_directory: str = str(GLOBAL_DATA_DIR / "collections")
    threads_db_path: str = str(GLOBAL_DATA_DIR / "threads.db")

    # External agent process
    agent_command: str = "opencode"
    agent_start_attempts: int = 10
    agent_port_min: int = 3000
    agent_port_max: int = 6000
    agent_startup_timeout_seconds: float = 15.0
    # Grace period between SIGTERM and SIGKILL when closing the agent.
    agent_shutdown_timeout_seconds: float = 2.0

    # git
    git_command: str = "git"
    git_timeout_seconds: float = 600.0

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8080

    # Logging
    log_level: str = "INFO"

    # Where the config came from, for diagnostics
    config_path: str | None = None
    project_config: bool = False

    def get_resource(self, name: str) -> ResourceDefinition:
        """Return the definition for ``name`` or raise ResourceNotConfiguredError."""
        resource = self.resources.get(name)
        if resource is None:
            raise ResourceNotConfiguredError(name, sorted(self.resources))
        return resource

    def resource_names(self) -> list[str]:
        return sorted(self.resources)

    def use_data_directory(self, data_directory: str | Path) -> None:
        """Point every storage path at ``data_directory``."""
        root = Path(data_directory).expanduser()
        self.data_directory = str(root)
        self.resources_directory = str(root / "resources")
        self.collections_directory = str(root / "collections")
        self.threads_db_path = str(root / "threads.db")

    def apply_env(self) -> BtcaConfig:
        """Apply BTCA_* environment overrides in place."""
        btca_vars = {
            k: v for k, v in os.environ.items() if k.startswith("BTCA_")
        }
        if btca_vars:
            logger.info(
                "BtcaConfig.apply_env: BTCA_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(btca_vars.items())),
            )
        else:
            logger.debug("BtcaConfig.apply_env: no BTCA_* env vars set")

        self.provider = _env_name("BTCA_PROVIDER", self.provider, validate_provider_name)
        self.model = _env_name("BTCA_MODEL", self.model, validate_model_name)
        data_dir = os.getenv("BTCA_DATA_DIR")
        if data_dir:
            self.use_data_directory(data_dir)
        self.agent_command = os.getenv("BTCA_AGENT_COMMAND", self.agent_command)
        self.agent_start_attempts = _env_number(
            "BTCA_AGENT_START_ATTEMPTS", self.agent_start_attempts, int
        )
        self.agent_startup_timeout_seconds = _env_number(
            "BTCA_AGENT_STARTUP_TIMEOUT", self.agent_startup_timeout_seconds, float
        )
        self.git_command = os.getenv("BTCA_GIT_COMMAND", self.git_command)
        self.git_timeout_seconds = _env_number(
            "BTCA_GIT_TIMEOUT_SECONDS", self.git_timeout_seconds, float
        )
        self.host = os.getenv("BTCA_HOST", self.host)
        self.port = _env_number("BTCA_PORT", self.port, int)
        self.log_level = os.getenv("BTCA_LOG_LEVEL", self.log_level)
        return self

    @classmethod
    def from_env(cls) -> BtcaConfig:
        """Defaults plus BTCA_* environment overrides, no config files."""
        config = cls(resources={r.name: r for r in DEFAULT_RESOURCES})
        config.apply_env()
        logger.info(
            "BtcaConfig.from_env: provider=%s model=%s data=%s",
            config.provider, config.model, config.data_directory,
        )
        return config
