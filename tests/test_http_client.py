"""Tests for the HTTP backend client."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from agent_session_store.config import BackendConfig
from agent_session_store.http_client import HttpBackendClient


def _message(session_id: str, index: int) -> dict[str, Any]:
    message_id = f"m{index}"
    return {
        "info": {
            "id": message_id,
            "sessionID": session_id,
            "role": "assistant",
            "time": {"created": index},
            "tokens": {"input": 10, "output": 5, "cache": {"read": 1, "write": 0}},
        },
        "parts": [{"id": f"p{index}", "type": "text", "messageID": message_id, "text": "hi"}],
    }


def _sse(*events: dict[str, Any]) -> str:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events)


def _client(handler: Any) -> HttpBackendClient:
    return HttpBackendClient(
        BackendConfig(base_url="http://backend.test"),
        transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestFetchMessages:
    @pytest.mark.asyncio
    async def test_extra_message_signals_more_above(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[_message("s1", i) for i in range(4)])

        async with _client(handler) as client:
            page = await client.fetch_messages("s1", limit=3, before="m9")

        assert seen[0].url.path == "/session/s1/message"
        assert seen[0].url.params["limit"] == "4"
        assert seen[0].url.params["before"] == "m9"
        assert [m.id for m in page.messages] == ["m1", "m2", "m3"]
        assert page.has_more_above
        assert not page.has_more_below
        assert page.messages[0].info.tokens.total == 16

    @pytest.mark.asyncio
    async def test_short_page_has_no_more(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[_message("s1", 0)])

        async with _client(handler) as client:
            page = await client.fetch_messages("s1", limit=3)

        assert len(page.messages) == 1
        assert not page.has_more_above

    @pytest.mark.asyncio
    async def test_after_pages_forward(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[_message("s1", i) for i in range(5, 8)])

        async with _client(handler) as client:
            page = await client.fetch_messages("s1", limit=2, after="m4")

        assert [m.id for m in page.messages] == ["m5", "m6"]
        assert page.has_more_below
        assert not page.has_more_above

    @pytest.mark.asyncio
    async def test_http_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with _client(handler) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.fetch_messages("s1", limit=3)


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_stream_events_parsed_and_filtered(self) -> None:
        bodies: list[dict[str, Any]] = []
        stream = _sse(
            {
                "type": "message.part.updated",
                "properties": {
                    "part": {"id": "p1", "type": "text", "messageID": "m1", "sessionID": "s1", "text": "he"}
                },
            },
            {
                "type": "message.part.updated",
                "properties": {
                    "part": {"id": "px", "type": "text", "messageID": "mx", "sessionID": "other"}
                },
            },
            {"type": "server.heartbeat", "properties": {}},
            {
                "type": "message.updated",
                "properties": {
                    "info": {"id": "m1", "sessionID": "s1", "time": {"created": 1, "completed": 2}}
                },
            },
        ) + "data: not-json\n\n: comment\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, text=stream, headers={"content-type": "text/event-stream"})

        async with _client(handler) as client:
            events = [
                e
                async for e in client.send_message(
                    "s1",
                    "hello",
                    "anthropic",
                    "claude",
                    agent="build",
                    attachments=[{"type": "file", "mime": "text/plain", "filename": "a", "url": "u"}],
                )
            ]

        assert [e.type for e in events] == ["part", "completed"]
        assert events[0].part is not None and events[0].part.text == "he"
        assert bodies[0]["agent"] == "build"
        assert bodies[0]["parts"][0] == {"type": "text", "text": "hello"}
        assert bodies[0]["parts"][1]["type"] == "file"


# ---------------------------------------------------------------------------
# Non-raising calls
# ---------------------------------------------------------------------------


class TestControlCalls:
    @pytest.mark.asyncio
    async def test_permission_response(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=True)

        async with _client(handler) as client:
            ok = await client.respond_to_permission("s1", "perm_1", "once", directory="/repo")

        assert ok
        assert seen[0].url.path == "/session/s1/permissions/perm_1"
        assert seen[0].url.params["directory"] == "/repo"
        assert json.loads(seen[0].content) == {"response": "once"}

    @pytest.mark.asyncio
    async def test_failures_reported_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with _client(handler) as client:
            assert not await client.respond_to_permission("s1", "p", "once")
            assert not await client.abort_session("s1")
            assert await client.list_sessions() is None
            assert await client.create_session("t") is None
            assert not await client.delete_session("s1")
            assert await client.update_session_title("s1", "t") is None
            assert await client.read_file("a.py") is None

    @pytest.mark.asyncio
    async def test_connection_error_reported(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            assert await client.list_sessions() is None
            assert not await client.abort_session("s1")

    @pytest.mark.asyncio
    async def test_list_sessions(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[
                    {"id": "s1", "title": "One", "directory": "/repo", "time": {"updated": 5}},
                    {"id": "s2", "parentID": "s1", "share": {"url": "https://x"}},
                ],
            )

        async with _client(handler) as client:
            sessions = await client.list_sessions(directory="/repo")

        assert sessions is not None
        assert sessions[0].updated_at == 5
        assert sessions[1].parent_id == "s1"
        assert sessions[1].share_url == "https://x"

    @pytest.mark.asyncio
    async def test_read_file(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"content": "print('hi')"})

        async with _client(handler) as client:
            data = await client.read_file("main.py", directory="/repo/src")

        assert data == b"print('hi')"
        assert seen[0].url.params["path"] == "main.py"
        assert seen[0].url.params["directory"] == "/repo/src"
