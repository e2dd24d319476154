"""Collection assembly.

A collection is a directory of symlinks, one per resource, that the
agent uses as its working directory. Its key is derived from the
resource names alone, so the same set of names always maps to the
same directory.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .errors import (
    BtcaError,
    CollectionError,
    ResourceNotConfiguredError,
    ValidationError,
)
from .resource_cache import ResourceCache
from .resources import CachedResource, ResourceDefinition
from .validation import require, validate_resources_array

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "+"


def collection_key(names: Iterable[str]) -> str:
    """Sorted, deduplicated names joined with ``+``."""
    unique = sorted(set(names))
    if not unique:
        raise CollectionError("Cannot create collection with no resources")
    return KEY_SEPARATOR.join(unique)


def _instructions_block(resource: CachedResource) -> str:
    lines = [f"## Resource: {resource.name}", f"Path: ./{resource.name}"]
    if resource.search_paths:
        lines.append(f"Focus: {', '.join(resource.search_paths)}")
    if resource.notes:
        lines.append(f"Notes: {resource.notes}")
    return "\n".join(lines)


@dataclass
class Collection:
    key: str
    path: str
    resources: list[CachedResource] = field(default_factory=list)
    agent_instructions: str = ""

    @property
    def resource_names(self) -> list[str]:
        return [r.name for r in self.resources]

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "path": self.path}


class CollectionAssembler:
    """Builds collection directories on top of a ResourceCache."""

    def __init__(
        self,
        collections_directory: str | Path,
        cache: ResourceCache,
        resources: dict[str, ResourceDefinition],
    ) -> None:
        self._root = Path(collections_directory)
        self._cache = cache
        self._resources = resources

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, names: Iterable[str]) -> list[ResourceDefinition]:
        """Look up definitions for ``names`` in key order."""
        definitions = []
        for name in sorted(set(names)):
            definition = self._resources.get(name)
            if definition is None:
                raise ResourceNotConfiguredError(name, sorted(self._resources))
            definitions.append(definition)
        return definitions

    async def ensure(self, names: Iterable[str]) -> Collection:
        """Ensure every named resource is cached and linked.

        Validation and configuration errors propagate unchanged; any
        other failure while caching or linking is wrapped in
        CollectionError with the cause chained.
        """
        names = list(names)
        if not names:
            raise CollectionError("Cannot create collection with no resources")
        require(validate_resources_array(names), "resources")

        key = collection_key(names)
        definitions = self.resolve(names)
        path = self._root / key

        try:
            cached = await asyncio.gather(
                *(self._cache.ensure(d) for d in definitions)
            )
        except (ValidationError, ResourceNotConfiguredError):
            raise
        except BtcaError as exc:
            raise CollectionError(
                f"Failed to prepare resources for collection {key}: {exc}"
            ) from exc

        try:
            path.mkdir(parents=True, exist_ok=True)
            for resource in cached:
                self._link(path / resource.name, Path(resource.path))
        except OSError as exc:
            raise CollectionError(
                f"Failed to materialize collection {key} at {path}: {exc}"
            ) from exc

        instructions = "\n\n".join(_instructions_block(r) for r in cached)
        logger.info(
            "Collection %s ready at %s (%d resources)",
            key, path, len(cached),
        )
        return Collection(
            key=key,
            path=str(path),
            resources=list(cached),
            agent_instructions=instructions,
        )

    def _link(self, link: Path, target: Path) -> None:
        if os.path.lexists(link):
            if link.is_symlink() and not link.exists():
                # Dangling: the resource moved or was cleared.
                logger.info("Replacing dangling link %s", link)
                link.unlink()
            else:
                return
        try:
            link.symlink_to(target.resolve(), target_is_directory=True)
            logger.debug("Linked %s -> %s", link, target)
        except FileExistsError:
            # Another request linked it first.
            pass

    def clear(self) -> None:
        """Delete every collection directory (the links, not the resources)."""
        if self._root.exists():
            shutil.rmtree(self._root)
            logger.info("Cleared collections at %s", self._root)
