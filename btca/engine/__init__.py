"""btca engine: resource cache, collections and the answer pipeline."""
from .config import BtcaConfig
from .resources import CachedResource, GitResource, LocalResource, resource_from_dict
from .errors import (
    AgentError,
    AgentStartError,
    BtcaError,
    CollectionError,
    ConfigError,
    InvalidModelError,
    InvalidProviderError,
    ProviderNotConnectedError,
    QuestionNotFoundError,
    RemoteError,
    ResourceError,
    ResourceNotConfiguredError,
    ResourceNotFoundError,
    ThreadNotFoundError,
    ThreadStoreError,
    ValidationError,
)

__all__ = [
    # Engine (lazy import to avoid circular deps)
    "BtcaEngine",
    "QuestionRun",
    "QuestionResult",
    # Storage (lazy import)
    "ResourceCache",
    "CollectionAssembler",
    "load_config",
    # Config and resources
    "BtcaConfig",
    "CachedResource",
    "GitResource",
    "LocalResource",
    "resource_from_dict",
    # Errors
    "AgentError",
    "AgentStartError",
    "BtcaError",
    "CollectionError",
    "ConfigError",
    "InvalidModelError",
    "InvalidProviderError",
    "ProviderNotConnectedError",
    "QuestionNotFoundError",
    "RemoteError",
    "ResourceError",
    "ResourceNotConfiguredError",
    "ResourceNotFoundError",
    "ThreadNotFoundError",
    "ThreadStoreError",
    "ValidationError",
]


def __getattr__(name: str):
    if name in ("BtcaEngine", "QuestionRun", "QuestionResult"):
        from . import engine
        return getattr(engine, name)
    if name == "ResourceCache":
        from .resource_cache import ResourceCache
        return ResourceCache
    if name == "CollectionAssembler":
        from .collections import CollectionAssembler
        return CollectionAssembler
    if name == "load_config":
        from .yaml_config import load_config
        return load_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
