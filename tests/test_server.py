"""HTTP tests for BtcaServer with a scripted agent backend."""
from __future__ import annotations

import asyncio
import shutil
import tempfile
import warnings
from pathlib import Path

from aiohttp.test_utils import AioHTTPTestCase

from btca.adapters.events import SessionError, SessionIdle, TextPartUpdated, ToolPartUpdated
from btca.engine.engine import BtcaEngine
from btca.server.server import BtcaServer
from btca.shared.services.thread_store import ThreadStore
from btca.shared.sse import SSEDecoder

from conftest import ScriptedBackend, make_local_config


def _answer(text: str) -> list:
    return [
        ToolPartUpdated(part_id="t1", message_id="m1", call_id="c1", tool_name="grep", status="running"),
        TextPartUpdated(part_id="p1", message_id="m1", text=text[: len(text) // 2]),
        ToolPartUpdated(part_id="t1", message_id="m1", call_id="c1", tool_name="grep", status="completed"),
        TextPartUpdated(part_id="p1", message_id="m1", text=text),
        SessionIdle(),
    ]


class TestBtcaServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        self.config = make_local_config(root)
        self.store = ThreadStore(self.config.threads_db_path)
        self.backend = ScriptedBackend()
        self.engine = BtcaEngine(self.config, self.backend, thread_store=self.store)
        self.btca_server = BtcaServer(self.engine, port=0, disconnect_poll_interval=0.02)
        return self.btca_server.app

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def _stream(self, body: dict) -> list[dict]:
        resp = await self.client.post("/question/stream", json=body)
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        decoder = SSEDecoder()
        frames = decoder.feed(await resp.read())
        frames.extend(decoder.flush())
        return frames

    async def test_root_and_health(self):
        resp = await self.client.get("/")
        assert resp.status == 200
        assert await resp.json() == {"ok": True, "service": "btca-server"}

        resp = await self.client.get("/health")
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["agent_available"] is True

    async def test_config_and_resources(self):
        resp = await self.client.get("/config")
        data = await resp.json()
        assert data["provider"] == "opencode"
        assert data["resourceCount"] == 2

        resp = await self.client.get("/resources")
        data = await resp.json()
        assert [r["name"] for r in data["resources"]] == ["alpha", "beta"]
        assert data["resources"][0]["type"] == "local"

    async def test_stream_sends_meta_first_and_done_last(self):
        self.backend.add_script(_answer("Alpha is a library."))

        frames = await self._stream({"question": "What is alpha?", "resources": ["alpha"]})

        assert frames[0]["type"] == "meta"
        assert frames[0]["collection"]["key"] == "alpha"
        assert frames[0]["resources"] == ["alpha"]
        assert "threadId" in frames[0]
        assert frames[-1] == {
            "type": "done", "answer": "Alpha is a library.", "status": "completed",
        }
        kinds = [f["type"] for f in frames[1:-1]]
        assert kinds == ["chunk.add", "chunk.add", "chunk.update", "chunk.update"]
        assert self.backend.sessions[0].closed

    async def test_stream_agent_error_sends_error_frame(self):
        self.backend.add_script([
            TextPartUpdated(part_id="p1", message_id="m1", text="Half"),
            SessionError(error_name="ProviderAuthError", message="missing API key"),
        ])

        frames = await self._stream({"question": "q", "resources": ["alpha"]})

        assert frames[0]["type"] == "meta"
        assert frames[-1]["type"] == "error"
        assert frames[-1]["tag"] == "AgentError"
        assert "missing API key" in frames[-1]["message"]
        question = self.store.get_question(frames[0]["questionId"])
        assert question.status == "failed"

    async def test_invalid_resource_name_rejected_before_agent_start(self):
        resp = await self.client.post(
            "/question/stream", json={"question": "q", "resources": ["../../etc"]},
        )
        assert resp.status == 400
        data = await resp.json()
        assert data["tag"] == "ValidationError"
        assert self.backend.starts == []
        assert not Path(self.config.collections_directory).exists()

    async def test_unknown_resource_is_400(self):
        resp = await self.client.post("/question", json={"question": "q", "resources": ["react"]})
        assert resp.status == 400
        data = await resp.json()
        assert data["tag"] == "ResourceNotConfiguredError"
        assert "Available resources: alpha, beta" in data["error"]

    async def test_bad_bodies_are_400(self):
        resp = await self.client.post("/question", data="not json",
                                      headers={"Content-Type": "application/json"})
        assert resp.status == 400
        resp = await self.client.post("/question", json={"resources": ["alpha"]})
        assert resp.status == 400
        resp = await self.client.post("/question", json={"question": "q", "resources": "alpha"})
        assert resp.status == 400

    async def test_question_json_and_threads(self):
        self.backend.add_script(_answer("First answer."))
        self.backend.add_script(_answer("Second answer."))

        resp = await self.client.post("/question", json={"question": "First?", "resources": ["alpha"]})
        assert resp.status == 200
        first = await resp.json()
        assert first["answer"] == "First answer."
        thread_id = first["threadId"]

        resp = await self.client.post(
            "/question",
            json={"question": "Second?", "resources": ["beta"], "threadId": thread_id},
        )
        second = await resp.json()
        assert second["resources"] == ["alpha", "beta"]

        resp = await self.client.get("/threads")
        threads = (await resp.json())["threads"]
        assert [t["id"] for t in threads] == [thread_id]
        assert threads[0]["questionCount"] == 2

        resp = await self.client.get(f"/threads/{thread_id}")
        thread = (await resp.json())["thread"]
        assert [q["status"] for q in thread["questions"]] == ["completed", "completed"]
        assert thread["resources"] == ["alpha", "beta"]

        resp = await self.client.delete(f"/threads/{thread_id}")
        assert resp.status == 200
        resp = await self.client.get(f"/threads/{thread_id}")
        assert resp.status == 404
        assert (await resp.json())["tag"] == "ThreadNotFoundError"

    async def test_unknown_thread_on_question_is_404(self):
        resp = await self.client.post(
            "/question/stream", json={"question": "q", "threadId": "missing"},
        )
        assert resp.status == 404
        assert self.backend.starts == []

    async def test_client_disconnect_cancels_question(self):
        self.backend.hang = True
        self.backend.add_script([TextPartUpdated(part_id="p1", message_id="m1", text="Partial")])

        resp = await self.client.post(
            "/question/stream", json={"question": "q", "resources": ["alpha"]},
        )
        assert resp.status == 200
        decoder = SSEDecoder()
        frames: list[dict] = []
        while len(frames) < 2:
            data = await resp.content.readany()
            assert data, "stream ended early"
            frames.extend(decoder.feed(data))
        assert [f["type"] for f in frames[:2]] == ["meta", "chunk.add"]
        question_id = frames[0]["questionId"]
        resp.close()

        question = self.store.get_question(question_id)
        for _ in range(250):
            if question.status != "pending":
                break
            await asyncio.sleep(0.02)
            question = self.store.get_question(question_id)

        assert self.backend.sessions[0].closed
        assert question.status == "canceled"
        assert question.answer == "Partial"

    async def test_request_id_stored_without_warning(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            resp = await self.client.get("/health", headers={"x-btca-request-id": "abc123"})
        assert resp.status == 200
        assert [w for w in caught if w.category.__name__ == "NotAppKeyWarning"] == []
