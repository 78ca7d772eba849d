#!/usr/bin/env python3
"""HTTP client for the `opencode serve` control API of background agents."""

from __future__ import annotations

import base64
from typing import Any

import httpx


# Session states as reported by resolve_session_status().
RUNNING = "running"
IDLE = "idle"
FINISHED = "finished"
UNREACHABLE = "unreachable"

MESSAGE_TEXT_LIMIT = 500


class ControlAPIError(RuntimeError):
    pass


class WorkerControlClient:
    """One pooled ``httpx.AsyncClient`` shared by every worker.

    Workers listen on ``http://localhost:<port>``; each call names its port.
    """

    def __init__(
        self,
        host: str = "localhost",
        timeout: float = 5.0,
        server_password: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = host
        self.server_password = server_password
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _url(self, port: int, path: str) -> str:
        return f"http://{self.host}:{port}{path}"

    def _auth_headers(self) -> dict[str, str]:
        if not self.server_password:
            return {}
        token = base64.b64encode(f"opencode:{self.server_password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    async def create_session(self, port: int, title: str) -> str:
        resp = await self.client.post(
            self._url(port, "/session"),
            headers=self._auth_headers(),
            json={"title": title},
        )
        if resp.status_code >= 400:
            body = resp.text.strip().replace("\n", " ")
            raise ControlAPIError(f"POST /session failed status={resp.status_code}; body={body[:300]}")
        try:
            session_id = resp.json()["id"]
        except Exception as exc:
            body = resp.text.strip().replace("\n", " ")
            raise ControlAPIError(f"POST /session parse failed: {exc}; body={body[:300]}") from exc
        if not isinstance(session_id, str) or not session_id:
            raise ControlAPIError(f"POST /session returned invalid id: {session_id!r}")
        return session_id

    async def prompt_async(
        self,
        port: int,
        session_id: str,
        text: str,
        model: str,
        provider: str,
    ) -> httpx.Response:
        return await self.client.post(
            self._url(port, f"/session/{session_id}/prompt_async"),
            headers=self._auth_headers(),
            json={
                "parts": [{"type": "text", "text": text}],
                "model": {"providerID": provider, "modelID": model},
            },
        )

    async def messages(self, port: int, session_id: str) -> httpx.Response:
        return await self.client.get(
            self._url(port, f"/session/{session_id}/message"),
            headers=self._auth_headers(),
        )

    async def session_status(self, port: int, session_id: str) -> httpx.Response:
        return await self.client.get(
            self._url(port, f"/session/{session_id}/status"),
            headers=self._auth_headers(),
        )

    async def abort(self, port: int, session_id: str) -> httpx.Response:
        return await self.client.post(
            self._url(port, f"/session/{session_id}/abort"),
            headers=self._auth_headers(),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def _message_field(message: Any, name: str) -> Any:
    if not isinstance(message, dict):
        return None
    info = message.get("info")
    if isinstance(info, dict) and info.get(name):
        return info.get(name)
    return message.get(name)


def resolve_session_status(messages: list[Any]) -> str:
    """Classify a session from its message history.

    Unrecognised role/status combinations resolve to ``idle``.
    """
    if not messages:
        return IDLE
    last = messages[-1]
    role = _message_field(last, "role")
    status = _message_field(last, "status")
    if role == "assistant" and status in ("completed", "done"):
        return FINISHED
    if role == "assistant" and status == "streaming":
        return RUNNING
    # Last word was ours: the agent owes a reply.
    if role == "user":
        return RUNNING
    return IDLE


async def fetch_session_status(client: WorkerControlClient, port: int, session_id: str) -> str:
    try:
        resp = await client.messages(port, session_id)
        if not resp.is_success:
            return UNREACHABLE
        messages = resp.json()
    except (httpx.HTTPError, ValueError):
        return UNREACHABLE
    if not isinstance(messages, list):
        return UNREACHABLE
    return resolve_session_status(messages)


def extract_message_texts(messages: list[Any], limit: int) -> list[dict[str, str]]:
    """Flatten text parts into ``{"role", "text"}`` items, keeping the last ``limit``."""
    texts: list[dict[str, str]] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        info = message.get("info") if isinstance(message.get("info"), dict) else {}
        parts = message.get("parts") or info.get("parts") or []
        role = str(info.get("role") or message.get("role") or "unknown")
        for part in parts:
            if not isinstance(part, dict) or part.get("type") != "text":
                continue
            text = part.get("text")
            if not isinstance(text, str):
                continue
            texts.append({"role": role, "text": text[:MESSAGE_TEXT_LIMIT]})
    return texts[-limit:] if limit > 0 else []
