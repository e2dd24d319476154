"""HTTP + SSE server for btca.

Exposes configuration, resources and threads as JSON, and answers
questions either as a single JSON response or as a Server-Sent Events
stream of chunk updates.

Usage:
    btca --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from btca.adapters.chunks import update_to_frame
from btca.engine.engine import BtcaEngine
from btca.engine.errors import (
    AgentError,
    BtcaError,
    CollectionError,
    ConfigError,
    ResourceError,
    ResourceNotConfiguredError,
    ResourceNotFoundError,
    ThreadNotFoundError,
    QuestionNotFoundError,
    ValidationError,
)
from btca.shared.sse import SSE_HEADERS, encode_event

logger = logging.getLogger(__name__)

SERVICE_NAME = "btca-server"
REQUEST_ID_KEY = web.RequestKey("req_id", str)

# Errors caused by the request itself.
_CLIENT_ERRORS = (
    ValidationError,
    ConfigError,
    CollectionError,
    ResourceError,
    ResourceNotConfiguredError,
    ResourceNotFoundError,
)
_NOT_FOUND_ERRORS = (ThreadNotFoundError, QuestionNotFoundError)


def error_status(exc: BaseException) -> int:
    """HTTP status for an exception raised while handling a request."""
    if isinstance(exc, _NOT_FOUND_ERRORS):
        return 404
    if isinstance(exc, _CLIENT_ERRORS):
        return 400
    return 500


def error_payload(exc: BaseException) -> dict[str, str]:
    tag = exc.tag if isinstance(exc, BtcaError) else "UnknownError"
    return {"error": str(exc) or type(exc).__name__, "tag": tag}


def error_response(exc: BaseException) -> web.Response:
    return web.json_response(error_payload(exc), status=error_status(exc))


class BtcaServer:
    """aiohttp front end over a BtcaEngine.

    Thin adapter: question state lives in the engine and the thread
    store. This class only handles HTTP routing and SSE framing.
    """

    def __init__(
        self,
        engine: BtcaEngine,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        disconnect_poll_interval: float = 1.0,
    ) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        # How often an SSE stream checks whether its client went away
        self._disconnect_poll_interval = disconnect_poll_interval
        self._started_at = time.time()
        self._active_runs = 0
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware]
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-btca-request-id", str(uuid.uuid4())[:8])
        request[REQUEST_ID_KEY] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BtcaError as exc:
            status = error_status(exc)
            log = logger.error if status >= 500 else logger.warning
            log("HTTP %s %s req=%s -> %d %s: %s", request.method, request.path,
                request.get(REQUEST_ID_KEY), status, exc.tag, exc)
            return error_response(exc)
        except Exception as exc:
            logger.exception("Unhandled error req=%s", request.get(REQUEST_ID_KEY))
            return error_response(exc)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_root)
        r.add_get("/health", self._handle_health)
        r.add_get("/config", self._handle_get_config)
        r.add_get("/resources", self._handle_get_resources)
        r.add_post("/question", self._handle_question)
        r.add_post("/question/stream", self._handle_question_stream)
        r.add_get("/threads", self._handle_list_threads)
        r.add_get("/threads/{id}", self._handle_get_thread)
        r.add_delete("/threads/{id}", self._handle_delete_thread)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("btca server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("btca server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Request parsing ──

    @staticmethod
    async def _read_question_body(request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError as exc:
            raise ValidationError("body", f"Invalid JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise ValidationError("body", "Request body must be a JSON object")

        question = body.get("question")
        if not isinstance(question, str):
            raise ValidationError("question", "question must be a string")
        resources = body.get("resources")
        if resources is not None and not isinstance(resources, list):
            raise ValidationError("resources", "resources must be an array of names")
        thread_id = body.get("threadId")
        if thread_id is not None and not isinstance(thread_id, str):
            raise ValidationError("threadId", "threadId must be a string")
        return {
            "question": question,
            "resources": resources,
            "thread_id": thread_id,
            "quiet": bool(body.get("quiet", False)),
        }

    def _require_threads(self):
        store = self._engine.thread_store
        if store is None:
            raise ValidationError("threads", "Threads are not enabled on this server")
        return store

    # ── Handlers ──

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "service": SERVICE_NAME})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_questions": self._active_runs,
            "agent_available": self._engine.backend.is_available(),
        })

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        config = self._engine.config
        return web.json_response({
            "provider": config.provider,
            "model": config.model,
            "dataDirectory": config.data_directory,
            "resourcesDirectory": config.resources_directory,
            "collectionsDirectory": config.collections_directory,
            "configPath": config.config_path,
            "projectConfig": config.project_config,
            "resourceCount": len(config.resources),
        })

    async def _handle_get_resources(self, request: web.Request) -> web.Response:
        config = self._engine.config
        return web.json_response({
            "resources": [
                config.resources[name].to_dict() for name in config.resource_names()
            ],
        })

    async def _handle_question(self, request: web.Request) -> web.Response:
        params = await self._read_question_body(request)
        self._active_runs += 1
        try:
            result = await self._engine.ask(
                params["question"],
                params["resources"],
                thread_id=params["thread_id"],
                quiet=params["quiet"],
            )
        finally:
            self._active_runs -= 1
        return web.json_response(result.to_dict())

    async def _handle_question_stream(self, request: web.Request) -> web.StreamResponse:
        params = await self._read_question_body(request)
        # Anything wrong with the request is reported as plain JSON
        # before the stream starts.
        run = await self._engine.start_question(
            params["question"],
            params["resources"],
            thread_id=params["thread_id"],
            quiet=params["quiet"],
        )

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        connected = True

        def disconnected() -> None:
            nonlocal connected
            if not connected:
                return
            connected = False
            logger.info(
                "Client disconnected req=%s; canceling question %s",
                request.get(REQUEST_ID_KEY), run.question_id or "-",
            )
            run.cancel()

        async def send(payload: dict[str, Any]) -> None:
            if not connected:
                return
            try:
                await response.write(encode_event(payload))
            except ConnectionResetError:
                disconnected()

        async def watch() -> None:
            # Notices a closed client even while the agent is silent.
            while connected:
                await asyncio.sleep(self._disconnect_poll_interval)
                transport = request.transport
                if transport is None or transport.is_closing():
                    disconnected()

        self._active_runs += 1
        watcher = None
        try:
            try:
                await response.prepare(request)
            except ConnectionResetError:
                disconnected()
            else:
                watcher = asyncio.ensure_future(watch())
            await send(run.meta)
            try:
                async for update in run:
                    await send(update_to_frame(update))
            except AgentError as exc:
                logger.warning("Question %s failed: %s", run.question_id or "-", exc)
                payload = error_payload(exc)
                await send({"type": "error", "message": payload["error"], "tag": payload["tag"]})
            else:
                await send({"type": "done", "answer": run.answer, "status": run.status})
        finally:
            self._active_runs -= 1
            if watcher is not None:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)

        if connected:
            try:
                await response.write_eof()
            except ConnectionResetError:
                logger.debug("Client gone before end of stream req=%s", request.get(REQUEST_ID_KEY))
        return response

    async def _handle_list_threads(self, request: web.Request) -> web.Response:
        store = self._require_threads()
        return web.json_response({
            "threads": [t.to_dict() for t in store.list_threads()],
        })

    async def _handle_get_thread(self, request: web.Request) -> web.Response:
        store = self._require_threads()
        thread = store.get_thread(request.match_info["id"])
        return web.json_response({"thread": thread.to_dict()})

    async def _handle_delete_thread(self, request: web.Request) -> web.Response:
        store = self._require_threads()
        thread_id = request.match_info["id"]
        store.delete_thread(thread_id)
        return web.json_response({"deleted": True, "id": thread_id})
