"""opencode agent backend.

Runs ``opencode serve`` inside the collection directory, restricted to
a single read-only ``docs`` agent, and talks to it over HTTP:

- ``GET /provider`` to check the configured provider and model
- ``POST /session`` to open a conversation
- ``POST /session/{id}/message`` to send the prompt
- ``GET /event`` (SSE) for the event stream, filtered to the session
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import re
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from btca.adapters.events import (
    AgentEvent,
    SessionError,
    event_session_id,
    parse_opencode_event,
)
from btca.engine.errors import (
    AgentError,
    AgentStartError,
    InvalidModelError,
    InvalidProviderError,
    ProviderNotConnectedError,
)
from btca.shared.sse import iter_sse_events

from .base import AgentBackend, AgentSession

logger = logging.getLogger(__name__)

AGENT_NAME = "docs"

_LISTENING_RE = re.compile(r"listening on (https?://\S+)", re.IGNORECASE)
_PORT_CONFLICT_MARKERS = ("eaddrinuse", "address already in use", "port")
# Lines of process output kept for error messages.
_OUTPUT_TAIL = 20
_END = object()


class _PortConflict(Exception):
    """The chosen port was taken; try another."""


def build_agent_config(instructions: str) -> dict[str, Any]:
    """opencode config with one read-only agent confined to the collection."""
    prompt = "\n".join([
        "You are the btca server agent.",
        "You operate inside a collection directory.",
        "Only use relative paths within '.' and never use '..' or absolute paths.",
        "Do not leave the collection directory.",
        "",
        instructions,
    ])
    return {
        "agent": {
            "build": {"disable": True},
            "explore": {"disable": True},
            "general": {"disable": True},
            "plan": {"disable": True},
            AGENT_NAME: {
                "prompt": prompt,
                "description": "Answer questions by searching the collection",
                "mode": "primary",
                "permission": {
                    "webfetch": "deny",
                    "edit": "deny",
                    "bash": "deny",
                    "external_directory": "deny",
                    "doom_loop": "deny",
                },
                "tools": {
                    "read": True,
                    "grep": True,
                    "glob": True,
                    "list": True,
                    "write": False,
                    "edit": False,
                    "bash": False,
                    "delete": False,
                    "path": False,
                    "todowrite": False,
                    "todoread": False,
                    "websearch": False,
                    "webfetch": False,
                    "skill": False,
                    "task": False,
                    "mcp": False,
                },
            },
        },
    }


def check_provider_listing(
    listing: dict[str, Any], provider_id: str, model_id: str,
) -> None:
    """Raise if ``provider_id``/``model_id`` is unusable per ``GET /provider``."""
    all_providers = listing.get("all") or []
    connected = [str(p) for p in listing.get("connected") or []]
    provider = next(
        (p for p in all_providers if isinstance(p, dict) and p.get("id") == provider_id),
        None,
    )
    if provider is None:
        raise InvalidProviderError(
            provider_id, [str(p.get("id")) for p in all_providers if isinstance(p, dict)],
        )
    if provider_id not in connected:
        raise ProviderNotConnectedError(provider_id, connected)
    models = list((provider.get("models") or {}).keys())
    if model_id not in models:
        raise InvalidModelError(provider_id, model_id, models)


async def _stop_process(proc: asyncio.subprocess.Process, grace_seconds: float) -> None:
    if proc.returncode is not None:
        return
    pid = proc.pid
    try:
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
        logger.info("opencode stopped (pid=%d)", pid)
    except ProcessLookupError:
        pass


class OpencodeSession(AgentSession):
    """A conversation with one ``opencode serve`` process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        base_url: str,
        *,
        provider: str,
        model: str,
        directory: str,
        shutdown_timeout: float = 2.0,
    ) -> None:
        self._process = process
        self._base_url = base_url
        self._provider = provider
        self._model = model
        self._directory = directory
        self._shutdown_timeout = shutdown_timeout
        self._http: aiohttp.ClientSession | None = None
        self._event_response: aiohttp.ClientResponse | None = None
        self._session_id = ""
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def pid(self) -> int:
        return self._process.pid

    async def open(self) -> None:
        """Validate the model, create the session and subscribe to events."""
        self._http = aiohttp.ClientSession(
            base_url=self._base_url,
            timeout=aiohttp.ClientTimeout(total=None, connect=10),
        )
        # Keep draining process output so the pipe never fills.
        self._tasks.append(asyncio.create_task(self._drain_output()))

        await self._validate_provider()

        data = await self._request("POST", "/session", json={})
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise AgentError(f"Failed to create session: unexpected response {data!r}")
        self._session_id = str(session_id)

        # Subscribe before prompting so no event is missed.
        try:
            self._event_response = await self._http.get(
                "/event", params={"directory": self._directory},
            )
        except aiohttp.ClientError as exc:
            raise AgentError(f"Failed to subscribe to events: {exc}") from exc
        if self._event_response.status != 200:
            raise AgentError(
                f"Failed to subscribe to events: HTTP {self._event_response.status}"
            )
        self._tasks.append(asyncio.create_task(self._pump_events()))
        logger.info(
            "opencode session %s opened (pid=%d url=%s)",
            self._session_id, self._process.pid, self._base_url,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        assert self._http is not None
        params = {"directory": self._directory}
        try:
            async with self._http.request(method, path, params=params, **kwargs) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise AgentError(
                        f"opencode {method} {path} failed: HTTP {resp.status}: {text[:300]}"
                    )
                return json.loads(text) if text else None
        except aiohttp.ClientError as exc:
            raise AgentError(f"opencode {method} {path} failed: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise AgentError(f"opencode {method} {path} returned invalid JSON") from exc

    async def _validate_provider(self) -> None:
        try:
            listing = await self._request("GET", "/provider")
        except AgentError as exc:
            # Older servers have no listing; the prompt will fail instead.
            logger.debug("Provider listing unavailable, skipping check: %s", exc)
            return
        if not isinstance(listing, dict):
            return
        check_provider_listing(listing, self._provider, self._model)

    async def _drain_output(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug("opencode[%d]: %s", self._process.pid, line.decode("utf-8", errors="replace").rstrip())

    async def _pump_events(self) -> None:
        assert self._event_response is not None
        try:
            async for raw in iter_sse_events(self._event_response.content.iter_any()):
                session_id = event_session_id(raw)
                if session_id is not None and session_id != self._session_id:
                    continue
                event = parse_opencode_event(raw)
                if event is not None:
                    await self._queue.put(event)
        except aiohttp.ClientError as exc:
            await self._queue.put(SessionError(
                session_id=self._session_id,
                error_name="EventStreamError",
                message=f"Event stream error: {exc}",
            ))
        finally:
            await self._queue.put(_END)

    async def _send_prompt(self, text: str) -> None:
        body = {
            "agent": AGENT_NAME,
            "model": {"providerID": self._provider, "modelID": self._model},
            "parts": [{"type": "text", "text": text}],
        }
        try:
            await self._request("POST", f"/session/{self._session_id}/message", json=body)
        except AgentError as exc:
            logger.warning("Prompt failed for session %s: %s", self._session_id, exc)
            await self._queue.put(SessionError(
                session_id=self._session_id,
                error_name="PromptError",
                message=f"Prompt failed: {exc}",
            ))

    async def prompt(self, text: str) -> None:
        if self._closed:
            raise AgentError("Session is closed")
        # The message call returns only once the answer is complete, so
        # it runs in the background while events stream.
        self._tasks.append(asyncio.create_task(self._send_prompt(text)))

    async def events(self) -> AsyncIterator[AgentEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def _abort(self) -> None:
        if not self._session_id or self._http is None or self._http.closed:
            return
        try:
            async with self._http.post(
                f"/session/{self._session_id}/abort",
                params={"directory": self._directory},
                timeout=aiohttp.ClientTimeout(total=1.0),
            ):
                pass
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("Abort for session %s failed: %s", self._session_id, exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._abort()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._event_response is not None:
            self._event_response.close()
        if self._http is not None:
            await self._http.close()
        await _stop_process(self._process, self._shutdown_timeout)
        # Unblock a consumer still waiting in events().
        self._queue.put_nowait(_END)
        logger.info("opencode session %s closed", self._session_id or "-")


class OpencodeBackend(AgentBackend):
    """Backend running ``opencode serve`` per question."""

    def __init__(
        self,
        command: str = "opencode",
        *,
        provider: str = "opencode",
        model: str = "claude-haiku-4-5",
        hostname: str = "127.0.0.1",
        start_attempts: int = 10,
        port_min: int = 3000,
        port_max: int = 6000,
        startup_timeout: float = 15.0,
        shutdown_timeout: float = 2.0,
    ) -> None:
        self._command = command
        self._provider = provider
        self._model = model
        self._hostname = hostname
        self._start_attempts = max(1, start_attempts)
        self._port_min = port_min
        self._port_max = port_max
        self._startup_timeout = startup_timeout
        self._shutdown_timeout = shutdown_timeout

    @classmethod
    def from_config(cls, config) -> OpencodeBackend:
        return cls(
            config.agent_command,
            provider=config.provider,
            model=config.model,
            start_attempts=config.agent_start_attempts,
            port_min=config.agent_port_min,
            port_max=config.agent_port_max,
            startup_timeout=config.agent_startup_timeout_seconds,
            shutdown_timeout=config.agent_shutdown_timeout_seconds,
        )

    @property
    def name(self) -> str:
        return "opencode"

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return self.resolve_command(self._command) is not None

    async def start(self, collection_path: str, instructions: str) -> OpencodeSession:
        config_json = json.dumps(build_agent_config(instructions))
        proc, base_url = await self._launch(collection_path, config_json)
        session = OpencodeSession(
            proc,
            base_url,
            provider=self._provider,
            model=self._model,
            directory=collection_path,
            shutdown_timeout=self._shutdown_timeout,
        )
        try:
            await session.open()
        except BaseException:
            await session.close()
            raise
        return session

    async def _launch(
        self, cwd: str, config_json: str,
    ) -> tuple[asyncio.subprocess.Process, str]:
        env = {**os.environ, "OPENCODE_CONFIG_CONTENT": config_json}
        for attempt in range(1, self._start_attempts + 1):
            port = random.randrange(self._port_min, self._port_max)
            try:
                # create_subprocess_exec passes args as array, no shell
                proc = await asyncio.create_subprocess_exec(
                    self._command, "serve",
                    "--hostname", self._hostname,
                    "--port", str(port),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=cwd,
                    env=env,
                )
            except FileNotFoundError as exc:
                raise AgentStartError(
                    f"'{self._command}' CLI not found. Install opencode first."
                ) from exc

            try:
                base_url = await asyncio.wait_for(
                    self._wait_until_listening(proc, port),
                    timeout=self._startup_timeout,
                )
            except _PortConflict as exc:
                await _stop_process(proc, self._shutdown_timeout)
                logger.warning(
                    "opencode port %d unavailable (attempt %d/%d): %s",
                    port, attempt, self._start_attempts, exc,
                )
                continue
            except asyncio.TimeoutError:
                await _stop_process(proc, self._shutdown_timeout)
                raise AgentStartError(
                    f"opencode did not start listening within {self._startup_timeout}s"
                ) from None
            except BaseException:
                await _stop_process(proc, self._shutdown_timeout)
                raise

            logger.info(
                "opencode started (pid=%d port=%d cwd=%s)", proc.pid, port, cwd,
            )
            return proc, base_url

        raise AgentStartError(
            "Failed to create OpenCode instance - all port attempts exhausted"
        )

    async def _wait_until_listening(
        self, proc: asyncio.subprocess.Process, port: int,
    ) -> str:
        assert proc.stdout is not None
        output: list[str] = []
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            output.append(line)
            del output[:-_OUTPUT_TAIL]
            match = _LISTENING_RE.search(line)
            if match:
                return match.group(1).rstrip("/")
            if "listening" in line.lower():
                return f"http://{self._hostname}:{port}"

        rc = await proc.wait()
        tail = "\n".join(output)
        if any(marker in tail.lower() for marker in _PORT_CONFLICT_MARKERS):
            raise _PortConflict(tail or f"exit code {rc}")
        raise AgentStartError(
            f"opencode exited with code {rc} before listening: {tail or 'no output'}"
        )
