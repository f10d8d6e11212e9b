"""Async HTTP client for an opencode-style agent backend."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from agent_session_store.config import BackendConfig
from agent_session_store.logging import get_logger
from agent_session_store.models import Message, PermissionResponse, Session
from agent_session_store.transport import BackendClient, MessagePage, StreamPartEvent

logger = get_logger("http_client")


class HttpBackendClient(BackendClient):
    """Thin async wrapper around the backend REST API.

    ``fetch_messages`` and ``send_message`` raise ``httpx`` errors so the
    store can report them. Every other method returns ``None`` or ``False``
    on failure and never raises.
    """

    def __init__(
        self,
        config: BackendConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or BackendConfig()
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=dict(self.config.headers),
            timeout=httpx.Timeout(self.config.timeout),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> HttpBackendClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @staticmethod
    def _params(directory: str | None = None, **extra: Any) -> dict[str, Any]:
        params = {k: v for k, v in extra.items() if v is not None}
        if directory:
            params["directory"] = directory
        return params

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def fetch_messages(
        self,
        session_id: str,
        limit: int,
        before: str | None = None,
        after: str | None = None,
    ) -> MessagePage:
        """Fetch one page. One extra message is requested to detect more."""
        resp = await self._client.get(
            f"/session/{session_id}/message",
            params=self._params(limit=limit + 1, before=before, after=after),
        )
        resp.raise_for_status()
        messages = [Message.from_dict(item) for item in resp.json()]

        more = len(messages) > limit
        if after is not None:
            return MessagePage(
                messages=messages[:limit],
                has_more_above=False,
                has_more_below=more,
            )
        return MessagePage(
            messages=messages[-limit:] if more else messages,
            has_more_above=more,
            has_more_below=False,
        )

    async def send_message(
        self,
        session_id: str,
        content: str,
        provider_id: str,
        model_id: str,
        agent: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamPartEvent]:
        """Post a user message and yield the reply's server-sent events."""
        body: dict[str, Any] = {
            "providerID": provider_id,
            "modelID": model_id,
            "parts": [{"type": "text", "text": content}, *(attachments or [])],
        }
        if agent:
            body["agent"] = agent

        async with self._client.stream(
            "POST",
            f"/session/{session_id}/message",
            json=body,
            headers={"Accept": "text/event-stream"},
        ) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                try:
                    event = StreamPartEvent.from_dict(json.loads(payload))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.debug("Skipping stream event: %s", e)
                    continue
                if event.session_id and event.session_id != session_id:
                    continue
                yield event

    # ------------------------------------------------------------------
    # Permissions and control
    # ------------------------------------------------------------------

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        response: PermissionResponse,
        directory: str | None = None,
    ) -> bool:
        try:
            resp = await self._client.post(
                f"/session/{session_id}/permissions/{permission_id}",
                json={"response": response},
                params=self._params(directory),
            )
            resp.raise_for_status()
            return True
        except Exception as exc:
            logger.warning("Failed to respond to permission %s: %s", permission_id, exc)
            return False

    async def abort_session(self, session_id: str, directory: str | None = None) -> bool:
        try:
            resp = await self._client.post(
                f"/session/{session_id}/abort", params=self._params(directory)
            )
            resp.raise_for_status()
            return True
        except Exception as exc:
            logger.warning("Failed to abort session %s: %s", session_id, exc)
            return False

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(self, directory: str | None = None) -> list[Session] | None:
        try:
            resp = await self._client.get("/session", params=self._params(directory))
            resp.raise_for_status()
            return [Session.from_dict(item) for item in resp.json()]
        except Exception as exc:
            logger.warning("Failed to list sessions: %s", exc)
            return None

    async def create_session(
        self,
        title: str | None = None,
        parent_id: str | None = None,
        directory: str | None = None,
    ) -> Session | None:
        try:
            body: dict[str, Any] = {}
            if title:
                body["title"] = title
            if parent_id:
                body["parentID"] = parent_id
            resp = await self._client.post("/session", json=body, params=self._params(directory))
            resp.raise_for_status()
            return Session.from_dict(resp.json())
        except Exception as exc:
            logger.warning("Failed to create session: %s", exc)
            return None

    async def delete_session(self, session_id: str) -> bool:
        try:
            resp = await self._client.delete(f"/session/{session_id}")
            resp.raise_for_status()
            return True
        except Exception as exc:
            logger.warning("Failed to delete session %s: %s", session_id, exc)
            return False

    async def update_session_title(self, session_id: str, title: str) -> Session | None:
        try:
            resp = await self._client.patch(f"/session/{session_id}", json={"title": title})
            resp.raise_for_status()
            return Session.from_dict(resp.json())
        except Exception as exc:
            logger.warning("Failed to rename session %s: %s", session_id, exc)
            return None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, path: str, directory: str | None = None) -> bytes | None:
        try:
            resp = await self._client.get(
                "/file/content", params=self._params(directory, path=path)
            )
            resp.raise_for_status()
            data = resp.json()
            content = data.get("content", "") if isinstance(data, dict) else ""
            return str(content).encode("utf-8")
        except Exception as exc:
            logger.warning("Failed to read file %s: %s", path, exc)
            return None
