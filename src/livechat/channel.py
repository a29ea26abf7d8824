"""Bidirectional chat channel over an aiohttp websocket."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


class ChannelClosed(Exception):
    pass


class ChannelHandler(Protocol):
    async def channel_connecting(self) -> None: ...

    async def channel_connected(self) -> None: ...

    async def channel_disconnected(self, reason: str) -> None: ...

    async def channel_event(self, event: str, body: Dict[str, Any]) -> None: ...


def _frame(event: str, body: Dict[str, Any]) -> Dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": event, "body": body}


class ChatChannel:
    """Owns one websocket at a time and re-establishes it after transport failures.

    Reconnect uses capped exponential backoff. The channel knows nothing about
    conversations; lifecycle and inbound frames are handed to the attached
    :class:`ChannelHandler`.
    """

    def __init__(
        self,
        url: str,
        *,
        heartbeat_s: Optional[float] = None,
        reconnect: bool = True,
        reconnect_initial_s: float = 0.5,
        reconnect_max_s: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self._heartbeat_s = heartbeat_s
        self._reconnect = reconnect
        self._reconnect_initial_s = reconnect_initial_s
        self._reconnect_max_s = reconnect_max_s
        self._session = session
        self._handler: ChannelHandler | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def attach(self, handler: ChannelHandler) -> None:
        self._handler = handler

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def open(self) -> None:
        if self._handler is None:
            raise RuntimeError("attach a handler before opening the channel")
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def emit(self, event: str, body: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise ChannelClosed(f"cannot emit {event}: channel is not connected")
        try:
            await ws.send_json(_frame(event, body))
        except ConnectionError as exc:
            raise ChannelClosed(f"cannot emit {event}: {exc}") from exc

    async def close(self) -> None:
        self._stop.set()
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        if ws is None:
            # Still dialing or waiting out a backoff.
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        assert self._handler is not None
        handler = self._handler
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        backoff_s = self._reconnect_initial_s
        try:
            while not self._stop.is_set():
                await handler.channel_connecting()
                try:
                    async with session.ws_connect(self.url, heartbeat=self._heartbeat_s) as ws:
                        self._ws = ws
                        backoff_s = self._reconnect_initial_s
                        logger.info("channel connected to %s", self.url)
                        await handler.channel_connected()
                        reason = await self._read_loop(ws, handler)
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                    reason = f"{type(exc).__name__}: {exc}"
                    logger.warning("channel transport error: %s", reason)
                finally:
                    self._ws = None
                await handler.channel_disconnected(reason)
                if self._stop.is_set() or not self._reconnect:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=backoff_s)
                except asyncio.TimeoutError:
                    pass
                backoff_s = min(backoff_s * 2, self._reconnect_max_s)
        finally:
            if owns_session:
                await session.close()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse, handler: ChannelHandler) -> str:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    logger.debug("dropping malformed frame")
                    continue
                if not isinstance(frame, dict):
                    continue
                event = frame.get("t")
                if event == "ping":
                    await ws.send_json({"v": PROTOCOL_VERSION, "t": "pong", "id": frame.get("id")})
                    continue
                body = frame.get("body") or {}
                if not isinstance(event, str) or not isinstance(body, dict):
                    logger.debug("dropping frame without event name or body")
                    continue
                try:
                    await handler.channel_event(event, body)
                except Exception:
                    logger.exception("handler failed for %s", event)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                return f"error: {ws.exception()}"
        return f"closed ({ws.close_code})"
