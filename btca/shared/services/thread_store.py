"""SQLite persistence for conversation threads.

A thread owns an ordered list of questions. Each question records the
resources it newly introduced; a thread's resources are the union of
those. Every mutation bumps the owning thread's ``updated_at``.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from btca.engine.errors import (
    QuestionNotFoundError,
    ThreadNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

QUESTION_STATUSES = ("pending", "completed", "canceled", "failed")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Question:
    id: str
    thread_id: str
    order: int
    prompt: str
    provider: str
    model: str
    resources: list[str] = field(default_factory=list)
    answer: str = ""
    status: str = "pending"
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "order": self.order,
            "prompt": self.prompt,
            "provider": self.provider,
            "model": self.model,
            "resources": list(self.resources),
            "answer": self.answer,
            "status": self.status,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
        }


@dataclass
class Thread:
    id: str
    created_at: int
    updated_at: int
    questions: list[Question] = field(default_factory=list)

    @property
    def resources(self) -> list[str]:
        return sorted({r for q in self.questions for r in q.resources})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "resources": self.resources,
            "questions": [q.to_dict() for q in self.questions],
        }


@dataclass
class ThreadSummary:
    id: str
    created_at: int
    updated_at: int
    question_count: int
    resources: list[str]
    first_prompt: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "questionCount": self.question_count,
            "resources": list(self.resources),
            "firstPrompt": self.first_prompt,
        }


def build_thread_context(questions: list[Question]) -> str:
    """Render earlier turns as a history block for the next prompt.

    Returns an empty string when there is no earlier turn.
    """
    lines: list[str] = []
    for index, question in enumerate(questions, start=1):
        lines.append(f"[Q{index}] {question.prompt}")
        if question.status == "completed":
            label = f"A{index}"
        else:
            label = f"A{index} - {question.status.upper()}"
        lines.append(f"[{label}] {question.answer}")
    if not lines:
        return ""
    history = "\n".join(lines)
    return f"=== CONVERSATION HISTORY ===\n{history}\n=== END HISTORY ==="


class ThreadStore:
    """Threads and questions in a single SQLite file."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS threads (
                    id TEXT PRIMARY KEY,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS questions (
                    id TEXT PRIMARY KEY,
                    thread_id TEXT NOT NULL
                        REFERENCES threads(id) ON DELETE CASCADE,
                    resources_json TEXT NOT NULL DEFAULT '[]',
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    answer TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'completed',
                    metadata_json TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL,
                    "order" INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_questions_thread ON questions(thread_id)"
            )

    @staticmethod
    def _row_to_question(row: sqlite3.Row) -> Question:
        return Question(
            id=str(row["id"]),
            thread_id=str(row["thread_id"]),
            order=int(row["order"]),
            prompt=str(row["prompt"]),
            provider=str(row["provider"]),
            model=str(row["model"]),
            resources=list(json.loads(row["resources_json"] or "[]")),
            answer=str(row["answer"] or ""),
            status=str(row["status"]),
            metadata=dict(json.loads(row["metadata_json"] or "{}")),
            created_at=int(row["created_at"]),
        )

    def _touch(self, conn: sqlite3.Connection, thread_id: str, now: int) -> None:
        conn.execute(
            "UPDATE threads SET updated_at = ? WHERE id = ?", (now, thread_id)
        )

    # ── Threads ──

    def create_thread(self) -> Thread:
        now = _now_ms()
        thread = Thread(id=str(uuid.uuid4()), created_at=now, updated_at=now)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO threads(id, created_at, updated_at) VALUES (?, ?, ?)",
                (thread.id, thread.created_at, thread.updated_at),
            )
        logger.debug("Created thread %s", thread.id)
        return thread

    def get_thread(self, thread_id: str) -> Thread:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, created_at, updated_at FROM threads WHERE id = ?",
                (thread_id,),
            ).fetchone()
            if row is None:
                raise ThreadNotFoundError(thread_id)
            rows = conn.execute(
                'SELECT * FROM questions WHERE thread_id = ? ORDER BY "order" ASC',
                (thread_id,),
            ).fetchall()
        return Thread(
            id=str(row["id"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
            questions=[self._row_to_question(r) for r in rows],
        )

    def list_threads(self) -> list[ThreadSummary]:
        """Thread summaries, most recently updated first."""
        with self._connect() as conn:
            threads = conn.execute(
                "SELECT id, created_at, updated_at FROM threads "
                "ORDER BY updated_at DESC, created_at DESC"
            ).fetchall()
            questions = conn.execute(
                'SELECT thread_id, prompt, resources_json FROM questions ORDER BY "order" ASC'
            ).fetchall()

        by_thread: dict[str, list[sqlite3.Row]] = {}
        for q in questions:
            by_thread.setdefault(str(q["thread_id"]), []).append(q)

        summaries = []
        for t in threads:
            rows = by_thread.get(str(t["id"]), [])
            resources = sorted({
                r for q in rows for r in json.loads(q["resources_json"] or "[]")
            })
            summaries.append(
                ThreadSummary(
                    id=str(t["id"]),
                    created_at=int(t["created_at"]),
                    updated_at=int(t["updated_at"]),
                    question_count=len(rows),
                    resources=resources,
                    first_prompt=str(rows[0]["prompt"]) if rows else None,
                )
            )
        return summaries

    def delete_thread(self, thread_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
            if cursor.rowcount == 0:
                raise ThreadNotFoundError(thread_id)
        logger.info("Deleted thread %s", thread_id)

    def get_accumulated_resources(self, thread_id: str) -> list[str]:
        return self.get_thread(thread_id).resources

    # ── Questions ──

    def append_question(
        self,
        thread_id: str,
        *,
        prompt: str,
        provider: str,
        model: str,
        resources: list[str] | None = None,
        answer: str = "",
        status: str = "pending",
        metadata: dict[str, Any] | None = None,
    ) -> Question:
        """Add a question at ``order = current question count``."""
        _check_status(status)
        now = _now_ms()
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
            if exists is None:
                raise ThreadNotFoundError(thread_id)
            count = conn.execute(
                "SELECT COUNT(*) AS n FROM questions WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()["n"]
            question = Question(
                id=str(uuid.uuid4()),
                thread_id=thread_id,
                order=int(count),
                prompt=prompt,
                provider=provider,
                model=model,
                resources=sorted(set(resources or [])),
                answer=answer,
                status=status,
                metadata=dict(metadata or {}),
                created_at=now,
            )
            conn.execute(
                """
                INSERT INTO questions(
                    id, thread_id, resources_json, provider, model, prompt,
                    answer, status, metadata_json, created_at, "order"
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    question.id, thread_id, json.dumps(question.resources),
                    provider, model, prompt, answer, status,
                    json.dumps(question.metadata, sort_keys=True), now,
                    question.order,
                ),
            )
            self._touch(conn, thread_id, now)
        logger.debug(
            "Appended question %s to thread %s (order=%d)",
            question.id, thread_id, question.order,
        )
        return question

    def get_question(self, question_id: str) -> Question:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM questions WHERE id = ?", (question_id,)
            ).fetchone()
        if row is None:
            raise QuestionNotFoundError(question_id)
        return self._row_to_question(row)

    def update_question(
        self,
        question_id: str,
        *,
        answer: str | None = None,
        status: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Question:
        sets: list[str] = []
        values: list[Any] = []
        if answer is not None:
            sets.append("answer = ?")
            values.append(answer)
        if status is not None:
            _check_status(status)
            sets.append("status = ?")
            values.append(status)
        if metadata is not None:
            sets.append("metadata_json = ?")
            values.append(json.dumps(metadata, sort_keys=True))

        now = _now_ms()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT thread_id FROM questions WHERE id = ?", (question_id,)
            ).fetchone()
            if row is None:
                raise QuestionNotFoundError(question_id)
            if sets:
                conn.execute(
                    f"UPDATE questions SET {', '.join(sets)} WHERE id = ?",
                    (*values, question_id),
                )
            self._touch(conn, str(row["thread_id"]), now)
        return self.get_question(question_id)


def _check_status(status: str) -> None:
    if status not in QUESTION_STATUSES:
        raise ValidationError(
            "status",
            f"Invalid question status '{status}' "
            f"(expected one of: {', '.join(QUESTION_STATUSES)})",
        )
