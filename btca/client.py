"""HTTP client for a running btca server."""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from btca.engine.errors import RemoteError
from btca.shared.sse import iter_sse_events

logger = logging.getLogger(__name__)


class BtcaClient:
    """Async client for the btca HTTP API.

    Use as an async context manager, or call ``close()`` when done.
    """

    def __init__(self, base_url: str, *, timeout: float | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> BtcaClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @staticmethod
    async def _raise_for_error(resp: aiohttp.ClientResponse) -> None:
        if resp.status < 400:
            return
        text = await resp.text()
        message, tag = text, None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            message = str(data.get("error") or text)
            tag = data.get("tag")
        logger.debug("btca server returned %d: %s", resp.status, message)
        raise RemoteError(resp.status, message, tag)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        async with self._http().request(method, self._url(path), **kwargs) as resp:
            await self._raise_for_error(resp)
            return await resp.json()

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def get_config(self) -> dict[str, Any]:
        return await self._request("GET", "/config")

    async def get_resources(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/resources")
        return list(data.get("resources", []))

    async def list_threads(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/threads")
        return list(data.get("threads", []))

    async def get_thread(self, thread_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/threads/{thread_id}")
        return data["thread"]

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/threads/{thread_id}")

    @staticmethod
    def _question_body(
        question: str,
        resources: list[str] | None,
        thread_id: str | None,
        quiet: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"question": question, "quiet": quiet}
        if resources:
            body["resources"] = list(resources)
        if thread_id:
            body["threadId"] = thread_id
        return body

    async def ask(
        self,
        question: str,
        resources: list[str] | None = None,
        *,
        thread_id: str | None = None,
        quiet: bool = False,
    ) -> dict[str, Any]:
        """Ask and wait for the full answer."""
        body = self._question_body(question, resources, thread_id, quiet)
        return await self._request("POST", "/question", json=body)

    async def ask_stream(
        self,
        question: str,
        resources: list[str] | None = None,
        *,
        thread_id: str | None = None,
        quiet: bool = False,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded SSE frames as they arrive.

        Closing the iterator early closes the connection, which cancels
        the question on the server.
        """
        body = self._question_body(question, resources, thread_id, quiet)
        async with self._http().post(
            self._url("/question/stream"),
            json=body,
            headers={"Accept": "text/event-stream"},
        ) as resp:
            await self._raise_for_error(resp)
            async for frame in iter_sse_events(resp.content.iter_any()):
                yield frame
