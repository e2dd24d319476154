"""Resource definitions and their cached, on-disk form."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .errors import ConfigError
from .validation import validate_git_resource, validate_local_resource


@dataclass(frozen=True)
class GitResource:
    """A git repository cached under the resources directory."""
    name: str
    url: str
    branch: str = "main"
    search_paths: tuple[str, ...] = ()
    notes: str = ""
    kind: str = field(default="git", init=False)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "git",
            "name": self.name,
            "url": self.url,
            "branch": self.branch,
        }
        if self.search_paths:
            d["searchPaths"] = list(self.search_paths)
        if self.notes:
            d["specialNotes"] = self.notes
        return d


@dataclass(frozen=True)
class LocalResource:
    """A directory on this machine, used in place."""
    name: str
    path: str
    notes: str = ""
    kind: str = field(default="local", init=False)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": "local", "name": self.name, "path": self.path}
        if self.notes:
            d["specialNotes"] = self.notes
        return d


ResourceDefinition = Union[GitResource, LocalResource]


@dataclass(frozen=True)
class CachedResource:
    """A resource materialized on disk and ready to be linked."""
    name: str
    kind: str
    path: str
    notes: str = ""
    search_paths: tuple[str, ...] = ()


def _collect_search_paths(raw: dict[str, Any]) -> list[str] | None:
    label = f"resource '{raw.get('name')}'"
    paths: list[str] = []
    single = raw.get("searchPath")
    if single is not None and not isinstance(single, str):
        raise ConfigError(label, "searchPath must be a string")
    if single:
        paths.append(single)
    multiple = raw.get("searchPaths")
    if multiple is not None:
        if not isinstance(multiple, list):
            raise ConfigError(label, "searchPaths must be a list")
        if not multiple:
            # Let the validator reject the explicit empty list.
            return []
        if not all(isinstance(p, str) for p in multiple):
            raise ConfigError(label, "searchPaths entries must be strings")
        paths.extend(multiple)
    if not paths:
        return None
    # Dedupe, keep order
    return list(dict.fromkeys(paths))


def resource_from_dict(raw: dict[str, Any], name: str | None = None) -> ResourceDefinition:
    """Build a validated ResourceDefinition from a config mapping.

    Accepts the config keys ``type``, ``name``, ``url``, ``branch``,
    ``searchPath``, ``searchPaths``, ``path`` and ``specialNotes``
    (``notes`` is accepted as an alias). Raises ConfigError when a
    field fails validation.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"resource '{name}'", "entry must be a mapping")
    name = str(raw.get("name") or name or "")
    label = f"resource '{name}'"
    notes = raw.get("specialNotes", raw.get("notes")) or ""
    if not isinstance(notes, str):
        raise ConfigError(label, "specialNotes must be a string")
    kind = raw.get("type") or ("local" if "path" in raw and "url" not in raw else "git")

    if kind == "local":
        path = str(raw.get("path") or "")
        result = validate_local_resource(name, path, notes)
        if not result.valid:
            raise ConfigError(label, result.error or "invalid local resource")
        return LocalResource(name=name, path=path, notes=notes)

    if kind != "git":
        raise ConfigError(label, f"unknown resource type '{kind}'")

    branch = str(raw.get("branch") or "main")
    search_paths = _collect_search_paths(raw)
    result = validate_git_resource(
        name,
        str(raw.get("url") or ""),
        branch,
        search_paths=search_paths,
        notes=notes,
    )
    if not result.valid:
        raise ConfigError(label, result.error or "invalid git resource")
    return GitResource(
        name=name,
        url=result.value,
        branch=branch,
        search_paths=tuple(search_paths or ()),
        notes=notes,
    )
