"""Shared fakes: a scripted agent backend and a config over local resources."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from btca.adapters.events import AgentEvent
from btca.engine.config import BtcaConfig
from btca.engine.providers.base import AgentBackend, AgentSession
from btca.engine.resources import LocalResource


class ScriptedSession(AgentSession):
    """Replays a fixed event list; optionally blocks afterwards."""

    def __init__(self, script: list[AgentEvent], *, hang: bool = False) -> None:
        self._script = list(script)
        self._hang = hang
        self.prompts: list[str] = []
        self.close_calls = 0
        self.released = asyncio.Event()

    @property
    def session_id(self) -> str:
        return "ses_test"

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def events(self):
        for event in self._script:
            await asyncio.sleep(0)
            yield event
        if self._hang:
            await self.released.wait()

    async def prompt(self, text: str) -> None:
        self.prompts.append(text)

    async def close(self) -> None:
        self.close_calls += 1
        self.released.set()


class ScriptedBackend(AgentBackend):
    """Starts ScriptedSessions; each start consumes the next script."""

    def __init__(self, *scripts: list[AgentEvent], hang: bool = False) -> None:
        self._scripts = list(scripts)
        self.hang = hang
        self.sessions: list[ScriptedSession] = []
        self.starts: list[tuple[str, str]] = []

    def add_script(self, script: list[AgentEvent]) -> None:
        self._scripts.append(list(script))

    @property
    def name(self) -> str:
        return "scripted"

    def is_available(self) -> bool:
        return True

    async def start(self, collection_path: str, instructions: str) -> ScriptedSession:
        self.starts.append((collection_path, instructions))
        script = self._scripts.pop(0) if self._scripts else []
        session = ScriptedSession(script, hang=self.hang)
        self.sessions.append(session)
        return session


def make_local_config(root: Path, names=("alpha", "beta")) -> BtcaConfig:
    """A config whose resources are plain directories under ``root/src``."""
    resources = {}
    for name in names:
        src = root / "src" / name
        src.mkdir(parents=True, exist_ok=True)
        (src / "README.md").write_text(f"# {name}\n", encoding="utf-8")
        resources[name] = LocalResource(name=name, path=str(src), notes=f"{name} docs")
    config = BtcaConfig(resources=resources)
    config.use_data_directory(root / "data")
    return config


@pytest.fixture
def local_config(tmp_path):
    return make_local_config(tmp_path)
