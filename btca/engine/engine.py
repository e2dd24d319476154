"""BtcaEngine - answers questions against a collection of resources.

Ties the pieces together for one question:

1. validate the question and resource names
2. fold in the thread's earlier resources and conversation history
3. ensure the collection (cache + symlinks)
4. start an agent session in the collection and send the prompt
5. reduce the agent's events into chunk updates
6. record the outcome on the thread's Question
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from btca.adapters.chunks import Chunk, ChunkUpdate
from btca.adapters.stream_reducer import (
    CANCELED,
    FAILED,
    STREAMING,
    StreamReducer,
)
from btca.shared.services.thread_store import ThreadStore, build_thread_context

from .collections import Collection, CollectionAssembler
from .config import BtcaConfig
from .errors import AgentError, ResourceNotConfiguredError, ValidationError
from .providers.base import AgentBackend, AgentSession
from .resource_cache import ResourceCache
from .validation import (
    QUESTION_MAX,
    require,
    validate_question,
    validate_resources_array,
)

logger = logging.getLogger(__name__)

# @name at the start of the question or after whitespace
_MENTION_RE = re.compile(r"(?<!\S)@([A-Za-z0-9@._/-]+)")


def parse_mentions(question: str) -> tuple[str, list[str]]:
    """Split ``@name`` resource mentions out of a question.

    Returns the question with the mentions removed and the mentioned
    names in order of appearance.
    """
    mentioned = _MENTION_RE.findall(question)
    cleaned = re.sub(r"[ \t]{2,}", " ", _MENTION_RE.sub("", question))
    return cleaned.strip(), mentioned


def merge_resource_names(explicit: list[str], mentioned: list[str]) -> list[str]:
    """Explicit names first, then mentions; duplicates dropped."""
    return list(dict.fromkeys([*explicit, *mentioned]))


def resolve_resource_name(name: str, available: list[str]) -> str | None:
    """Case-insensitive match of ``name`` (with or without a leading @)."""
    target = name.lower().lstrip("@").rstrip(".")
    for candidate in available:
        if candidate.lower() == target:
            return candidate
    return None


@dataclass
class QuestionResult:
    """Outcome of a question run to completion."""
    answer: str
    status: str
    model: dict[str, str]
    resources: list[str]
    collection: dict[str, str]
    chunks: list[Chunk] = field(default_factory=list)
    thread_id: str | None = None
    question_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "answer": self.answer,
            "status": self.status,
            "model": dict(self.model),
            "resources": list(self.resources),
            "collection": dict(self.collection),
        }
        if self.thread_id:
            data["threadId"] = self.thread_id
        if self.question_id:
            data["questionId"] = self.question_id
        return data


class QuestionRun:
    """One in-flight question.

    Iterate to receive ChunkUpdates. The run concludes exactly once,
    as completed, failed or canceled, and always closes its session.
    """

    def __init__(
        self,
        session: AgentSession,
        *,
        collection: Collection,
        provider: str,
        model: str,
        thread_store: ThreadStore | None = None,
        thread_id: str | None = None,
        question_id: str | None = None,
    ) -> None:
        self._session = session
        self._collection = collection
        self._provider = provider
        self._model = model
        self._store = thread_store
        self.thread_id = thread_id
        self.question_id = question_id
        self._reducer = StreamReducer()
        self._cancel = asyncio.Event()
        self._started = time.monotonic()
        self._finalized = False
        self._iterated = False

    @property
    def meta(self) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "type": "meta",
            "model": {"provider": self._provider, "model": self._model},
            "resources": self._collection.resource_names,
            "collection": self._collection.to_dict(),
        }
        if self.thread_id:
            meta["threadId"] = self.thread_id
        if self.question_id:
            meta["questionId"] = self.question_id
        return meta

    @property
    def status(self) -> str:
        return self._reducer.status

    @property
    def answer(self) -> str:
        return self._reducer.answer()

    @property
    def chunks(self) -> list[Chunk]:
        return self._reducer.chunks()

    @property
    def error(self) -> AgentError | None:
        return self._reducer.error

    def cancel(self) -> None:
        """Request cancellation; the stream ends at the next wait."""
        if not self._cancel.is_set():
            logger.info("Cancel requested for question %s", self.question_id or "-")
            self._cancel.set()

    def result(self) -> QuestionResult:
        return QuestionResult(
            answer=self.answer,
            status=self.status,
            model={"provider": self._provider, "model": self._model},
            resources=self._collection.resource_names,
            collection=self._collection.to_dict(),
            chunks=self.chunks,
            thread_id=self.thread_id,
            question_id=self.question_id,
        )

    async def stream(self) -> AsyncIterator[ChunkUpdate]:
        if self._iterated:
            raise RuntimeError("QuestionRun can only be iterated once")
        self._iterated = True
        updates = self._reducer.run(self._session, self._cancel)
        try:
            async for update in updates:
                yield update
        except AgentError:
            self._finalize(FAILED)
            raise
        except (asyncio.CancelledError, GeneratorExit):
            self._reducer.cancel()
            self._finalize(CANCELED)
            raise
        finally:
            if self._reducer.status == STREAMING:
                self._reducer.cancel()
            self._finalize(self._reducer.status)
            await updates.aclose()
            await asyncio.shield(self._session.close())

    def __aiter__(self) -> AsyncIterator[ChunkUpdate]:
        return self.stream()

    async def wait(self) -> QuestionResult:
        """Drain the stream and return the result."""
        async for _ in self.stream():
            pass
        return self.result()

    def _metadata(self) -> dict[str, Any]:
        tools = self._reducer.tool_calls()
        chunks = self._reducer.chunks()
        return {
            "durationMs": int((time.monotonic() - self._started) * 1000),
            "toolCalls": len(tools),
            "filesRead": sum(1 for c in chunks if c.chunk_type == "file"),
        }

    def _finalize(self, status: str) -> None:
        if self._finalized:
            return
        self._finalized = True
        metadata = self._metadata()
        logger.info(
            "Question %s %s (%d chars, %d tool calls, %dms)",
            self.question_id or "-", status, len(self.answer),
            metadata["toolCalls"], metadata["durationMs"],
        )
        if self._store is None or self.question_id is None:
            return
        if status == FAILED and self._reducer.error is not None:
            metadata["error"] = str(self._reducer.error)
        # Failed and canceled runs keep the partial answer.
        self._store.update_question(
            self.question_id, answer=self.answer, status=status, metadata=metadata,
        )


class BtcaEngine:
    """Answers questions; owns the cache, the assembler and the store."""

    def __init__(
        self,
        config: BtcaConfig,
        backend: AgentBackend | None = None,
        *,
        thread_store: ThreadStore | None = None,
        cache: ResourceCache | None = None,
    ) -> None:
        if backend is None:
            from .providers.opencode_provider import OpencodeBackend
            backend = OpencodeBackend.from_config(config)
        self.config = config
        self.backend = backend
        self.thread_store = thread_store
        self.cache = cache or ResourceCache.from_config(config)
        self.assembler = CollectionAssembler(
            config.collections_directory, self.cache, config.resources,
        )

    def _resolve_names(
        self,
        resources: list[str] | None,
        thread_id: str | None,
        mentioned: list[str] | None = None,
    ) -> tuple[list[str], list[str], str]:
        """Return (all names, names new to the thread, history block).

        Explicit names and @mentions are matched case-insensitively
        against the configured resources; with neither, every
        configured resource is used.
        """
        explicit = require(validate_resources_array(resources), "resources") or []
        wanted = merge_resource_names(explicit, mentioned or [])
        available = self.config.resource_names()
        if wanted:
            resolved: list[str] = []
            for name in wanted:
                match = resolve_resource_name(name, available)
                if match is None:
                    raise ResourceNotConfiguredError(name, available)
                resolved.append(match)
            requested = require(
                validate_resources_array(list(dict.fromkeys(resolved))), "resources",
            )
        else:
            requested = available

        previous: list[str] = []
        history = ""
        if thread_id is not None:
            if self.thread_store is None:
                raise ValidationError("threadId", "Threads are not enabled")
            thread = self.thread_store.get_thread(thread_id)
            previous = thread.resources
            history = build_thread_context(thread.questions)

        names = sorted(set(requested) | set(previous))
        new = sorted(set(requested) - set(previous))
        return names, new, history

    async def start_question(
        self,
        question: str,
        resources: list[str] | None = None,
        *,
        thread_id: str | None = None,
        quiet: bool = False,
    ) -> QuestionRun:
        """Prepare everything and send the prompt; returns the live run."""
        require(validate_question(question), "question")
        question, mentioned = parse_mentions(question)
        require(validate_question(question), "question")
        names, new_names, history = self._resolve_names(resources, thread_id, mentioned)

        prompt = question
        if history:
            prompt = f"{history}\n\nCurrent question: {question}"
            if len(prompt) > QUESTION_MAX:
                raise ValidationError(
                    "question",
                    f"Question with conversation history too long: "
                    f"{len(prompt)} chars (max {QUESTION_MAX})",
                )

        log = logger.debug if quiet else logger.info
        log(
            "Question for %s (thread=%s): %.80s",
            "+".join(names), thread_id or "-", question,
        )

        collection = await self.assembler.ensure(names)
        session = await self.backend.start(
            collection.path, collection.agent_instructions,
        )
        question_id = None
        try:
            if self.thread_store is not None:
                if thread_id is None:
                    thread_id = self.thread_store.create_thread().id
                    new_names = names
                record = self.thread_store.append_question(
                    thread_id,
                    prompt=question,
                    provider=self.config.provider,
                    model=self.config.model,
                    resources=new_names,
                    status="pending",
                )
                question_id = record.id

            run = QuestionRun(
                session,
                collection=collection,
                provider=self.config.provider,
                model=self.config.model,
                thread_store=self.thread_store,
                thread_id=thread_id,
                question_id=question_id,
            )
            await session.prompt(prompt)
        except BaseException:
            if question_id is not None:
                self.thread_store.update_question(question_id, status=FAILED)
            await session.close()
            raise
        return run

    async def ask(
        self,
        question: str,
        resources: list[str] | None = None,
        *,
        thread_id: str | None = None,
        quiet: bool = False,
    ) -> QuestionResult:
        run = await self.start_question(
            question, resources, thread_id=thread_id, quiet=quiet,
        )
        return await run.wait()

    def clear(self) -> None:
        """Delete cached resources and collections."""
        self.assembler.clear()
        self.cache.clear()

