"""On-disk cache of resources.

Git resources are shallow working copies under
``resources_directory/<name>``; local resources are used in place.
``ensure`` is idempotent and holds a per-name lock, so one resource is
never cloned or refreshed twice at the same time while different
resources proceed in parallel.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path

from .errors import ResourceError, ResourceNotFoundError
from .resources import CachedResource, GitResource, LocalResource, ResourceDefinition
from .validation import require, validate_git_resource, validate_local_resource

logger = logging.getLogger(__name__)

# Longest stderr excerpt carried into a ResourceError.
_STDERR_EXCERPT = 500


class ResourceCache:
    """Ensures resources have a usable local directory."""

    def __init__(
        self,
        resources_directory: str | Path,
        *,
        git_command: str = "git",
        git_timeout_seconds: float = 600.0,
    ) -> None:
        self._root = Path(resources_directory)
        self._git_command = git_command
        self._git_timeout = git_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config) -> ResourceCache:
        return cls(
            config.resources_directory,
            git_command=config.git_command,
            git_timeout_seconds=config.git_timeout_seconds,
        )

    @property
    def root(self) -> Path:
        return self._root

    def resource_path(self, definition: ResourceDefinition) -> Path:
        if isinstance(definition, LocalResource):
            return Path(definition.path)
        return self._root / definition.name

    def is_cached(self, definition: ResourceDefinition) -> bool:
        path = self.resource_path(definition)
        if isinstance(definition, LocalResource):
            return path.is_dir()
        return _is_working_copy(path)

    async def ensure(self, definition: ResourceDefinition) -> CachedResource:
        """Make ``definition`` available on disk and describe where."""
        # Re-validated here even though config loading already did.
        if isinstance(definition, LocalResource):
            require(
                validate_local_resource(definition.name, definition.path, definition.notes),
                "resource",
            )
        else:
            require(
                validate_git_resource(
                    definition.name,
                    definition.url,
                    definition.branch,
                    search_paths=list(definition.search_paths) or None,
                    notes=definition.notes,
                ),
                "resource",
            )

        lock = self._locks.setdefault(definition.name, asyncio.Lock())
        async with lock:
            if isinstance(definition, LocalResource):
                return self._ensure_local(definition)
            return await self._ensure_git(definition)

    def clear(self) -> None:
        """Delete every cached git resource."""
        if self._root.exists():
            shutil.rmtree(self._root)
            logger.info("Cleared resource cache at %s", self._root)

    # ── Local ──

    def _ensure_local(self, definition: LocalResource) -> CachedResource:
        path = Path(definition.path)
        if not path.is_dir():
            raise ResourceNotFoundError(definition.name, definition.path)
        return CachedResource(
            name=definition.name,
            kind="local",
            path=str(path),
            notes=definition.notes,
        )

    # ── Git ──

    async def _ensure_git(self, definition: GitResource) -> CachedResource:
        target = self._root / definition.name
        if _is_working_copy(target):
            await self._refresh(definition, target)
        else:
            if target.exists() or target.is_symlink():
                logger.warning(
                    "Resource %s: %s is not a git working copy; re-cloning",
                    definition.name, target,
                )
                _remove_path(target)
            await self._clone(definition, target)
        return CachedResource(
            name=definition.name,
            kind="git",
            path=str(target.resolve()),
            notes=definition.notes,
            search_paths=definition.search_paths,
        )

    async def _clone(self, definition: GitResource, target: Path) -> None:
        name = definition.name
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise ResourceError(name, "clone", f"cannot create {self._root}: {exc}") from exc

        # Cloned into a hidden sibling and renamed into place, so a
        # failure never leaves a directory that looks valid.
        staging = self._root / f".{name}.partial-{uuid.uuid4().hex[:8]}"
        logger.info(
            "Cloning resource %s from %s (branch=%s search_paths=%s)",
            name, definition.url, definition.branch,
            ",".join(definition.search_paths) or "-",
        )
        try:
            await self._run_git(name, "clone", ["init", "--quiet", "--", str(staging)], self._root)
            await self._run_git(name, "clone", ["remote", "add", "--", "origin", definition.url], staging)
            if definition.search_paths:
                await self._run_git(
                    name, "clone",
                    ["sparse-checkout", "set", "--", *definition.search_paths],
                    staging,
                )
            await self._run_git(
                name, "clone",
                ["fetch", "--quiet", "--depth=1", "--", "origin", definition.branch],
                staging,
            )
            await self._run_git(
                name, "clone",
                ["checkout", "--quiet", "-B", definition.branch, "FETCH_HEAD", "--"],
                staging,
            )
            if not _has_content(staging):
                raise ResourceError(
                    name, "clone",
                    "checkout is empty; check the branch and searchPaths",
                )
            staging.rename(target)
        except PermissionError as exc:
            _remove_path(staging)
            raise ResourceError(name, "clone", str(exc)) from exc
        except BaseException:
            _remove_path(staging)
            raise
        logger.info("Cloned resource %s into %s", name, target)

    async def _refresh(self, definition: GitResource, target: Path) -> None:
        name = definition.name
        logger.info("Refreshing resource %s (branch=%s)", name, definition.branch)
        await self._run_git(name, "refresh", ["remote", "set-url", "--", "origin", definition.url], target)
        if definition.search_paths:
            await self._run_git(
                name, "refresh",
                ["sparse-checkout", "set", "--", *definition.search_paths],
                target,
            )
        elif (target / ".git" / "info" / "sparse-checkout").exists():
            await self._run_git(name, "refresh", ["sparse-checkout", "disable"], target)
        await self._run_git(
            name, "refresh",
            ["fetch", "--quiet", "--depth=1", "--", "origin", definition.branch],
            target,
        )
        # Forced checkout of the fetched tip is a hard reset of the branch.
        await self._run_git(
            name, "refresh",
            ["checkout", "--quiet", "--force", "-B", definition.branch, "FETCH_HEAD", "--"],
            target,
        )
        logger.debug("Refreshed resource %s", name)

    async def _run_git(
        self, name: str, operation: str, args: list[str], cwd: Path,
    ) -> str:
        """Run one git command with a bounded runtime.

        Arguments go to create_subprocess_exec as an array, never
        through a shell.
        """
        cmd = [self._git_command, *args]
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        logger.debug("git %s (resource=%s cwd=%s)", " ".join(args), name, cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
            )
        except FileNotFoundError as exc:
            raise ResourceError(
                name, operation, f"'{self._git_command}' not found on PATH",
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._git_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ResourceError(
                name, operation,
                f"git {args[0]} timed out after {self._git_timeout}s",
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = (stderr or stdout).decode("utf-8", errors="replace").strip()
            raise ResourceError(
                name, operation,
                f"git {args[0]} exited with {proc.returncode}: "
                f"{detail[-_STDERR_EXCERPT:] or 'no output'}",
            )
        return stdout.decode("utf-8", errors="replace")


def _is_working_copy(path: Path) -> bool:
    return path.is_dir() and (path / ".git").exists()


def _has_content(path: Path) -> bool:
    return any(child.name != ".git" for child in path.iterdir())


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)
