"""aiohttp client for the support desk's request/response endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .identity import CustomerIdentity

logger = logging.getLogger(__name__)


class ChatApiError(Exception):
    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message)


@dataclass(frozen=True)
class StartResult:
    conversation_id: str
    initial_messages: Tuple[Dict[str, Any], ...]


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class ChatApi:
    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.base_url = base_url
        self._session = session
        self._owns_session = session is None
        self._timeout_s = timeout_s

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        url = _build_url(self.base_url, path)
        kwargs: Dict[str, Any] = {"json": payload}
        if self._timeout_s is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=self._timeout_s)
        try:
            async with session.request(method, url, **kwargs) as response:
                raw = await response.text()
                if response.status >= 400:
                    raise ChatApiError(
                        f"{method} {path} responded {response.status}: {raw[:100]}",
                        status=response.status,
                    )
        except aiohttp.ClientError as exc:
            raise ChatApiError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ChatApiError(f"{method} {path} timed out") from exc
        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise ChatApiError(f"{method} {path} returned malformed json") from exc
        if not isinstance(data, dict):
            raise ChatApiError(f"{method} {path} returned a non-object body")
        return data

    async def start_or_resume(self, identity: CustomerIdentity) -> StartResult:
        """Start a conversation for ``identity`` or resume its unresolved one.

        Raises:
            ChatApiError: the desk is unreachable, answered with an error
                status, or the response lacks a conversation id.
        """

        data = await self._request("POST", "/api/chat/start", identity.start_payload())
        conversation_id = data.get("conversationId")
        if isinstance(conversation_id, bool) or not isinstance(conversation_id, (str, int)) or conversation_id == "":
            raise ChatApiError("start response missing conversationId")
        initial = data.get("initialMessages") or []
        if not isinstance(initial, list):
            raise ChatApiError("start response initialMessages must be a list")
        logger.info("conversation %s ready with %d backlog messages", conversation_id, len(initial))
        return StartResult(
            conversation_id=str(conversation_id),
            initial_messages=tuple(entry for entry in initial if isinstance(entry, dict)),
        )

    async def resolve(self, conversation_id: str, resolved_by: Any) -> None:
        path = f"/api/chat/{urllib.parse.quote(conversation_id, safe='')}/resolve"
        await self._request("PUT", path, {"resolvedBy": resolved_by})

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
