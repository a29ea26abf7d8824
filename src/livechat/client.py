from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from .api import ChatApi, ChatApiError
from .channel import ChannelClosed, ChatChannel
from .config import ChatConfig
from .debounce import TypingDebouncer
from .identity import CustomerIdentity, require_ready
from .session import (
    NOTICE_CHANNEL_ERROR,
    NOTICE_SEND_REJECTED,
    NOTICE_SESSION_ENDED,
    CancelTypingTimer,
    ChatState,
    CloseChannel,
    Connected,
    Connecting,
    ConnectionState,
    Disconnected,
    Effect,
    Emit,
    EndChat,
    Inbound,
    InitFailed,
    InitSucceeded,
    Input,
    Notice,
    Reset,
    ResolveConversation,
    ResolveFailed,
    ResolveSucceeded,
    RestartTypingTimer,
    SendText,
    StartConversation,
    Typed,
    TypingIdle,
    transition,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[ChatState], None]
NoticeListener = Callable[[Notice], None]


def _local_message_id() -> str:
    return f"local-{secrets.token_hex(6)}"


class LiveChatClient:
    """Customer side of a live support chat.

    Owns the session state, the channel and the typing timer. Every state
    change runs through one lock, so channel callbacks, timer expiry and user
    actions never interleave. Remote calls run in their own tasks and report
    back through the same path.
    """

    def __init__(
        self,
        identity: Optional[CustomerIdentity],
        config: ChatConfig | None = None,
        *,
        api: ChatApi | None = None,
        channel: ChatChannel | None = None,
        on_change: StateListener | None = None,
        on_notice: NoticeListener | None = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.identity = identity
        self.draft = ""
        self._owns_api = api is None
        self._api = api or ChatApi(self.config.base_url, timeout_s=self.config.request_timeout_s)
        self._channel = channel or ChatChannel(
            self.config.ws_url,
            heartbeat_s=self.config.heartbeat_s,
            reconnect=self.config.reconnect,
            reconnect_initial_s=self.config.reconnect_initial_s,
            reconnect_max_s=self.config.reconnect_max_s,
        )
        self._on_change = on_change
        self._on_notice = on_notice
        self._state = ChatState()
        self._lock = asyncio.Lock()
        self._typing = TypingDebouncer(self.config.typing_idle_s, self._typing_idle)
        self._tasks: Set[asyncio.Task] = set()
        self._resolve_task: asyncio.Task | None = None

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def typing_pending(self) -> bool:
        return self._typing.pending

    async def open(self) -> None:
        """Open the channel; the conversation starts once it connects.

        Raises:
            IdentityNotReady: the customer identity is missing or partial.
        """

        require_ready(self.identity)
        self._channel.attach(self)
        self._channel.open()

    async def send_message(self, text: str) -> bool:
        _, effects = await self._dispatch(SendText(text, _local_message_id(), datetime.now()))
        if any(isinstance(effect, Notice) and effect.kind == NOTICE_SEND_REJECTED for effect in effects):
            return False
        self.draft = ""
        return True

    async def notify_typing(self, text: str = "") -> None:
        """Announce a keystroke; ``text`` is kept as :attr:`draft` until a send succeeds."""

        self.draft = text
        await self._dispatch(Typed())

    async def end_chat(self) -> bool:
        """End the conversation; returns ``True`` once local teardown happened."""

        _, effects = await self._dispatch(EndChat())
        if any(isinstance(effect, Notice) and effect.kind == NOTICE_SESSION_ENDED for effect in effects):
            return True
        task = self._resolve_task
        if task is None or not any(isinstance(effect, ResolveConversation) for effect in effects):
            return False
        return await task

    async def reset(self) -> None:
        await self._dispatch(Reset())

    async def close(self) -> None:
        await self._typing.aclose()
        await self._channel.close()
        # Cancelled tasks may still spawn follow-ups (an abandoned start closes the channel).
        while True:
            pending = [task for task in self._tasks if task is not asyncio.current_task() and not task.done()]
            if not pending:
                break
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if self._state.connection is not ConnectionState.DISCONNECTED:
            await self._dispatch(Disconnected("closed"))
        if self._owns_api:
            await self._api.close()

    # Channel callbacks

    async def channel_connecting(self) -> None:
        await self._dispatch(Connecting())

    async def channel_connected(self) -> None:
        await self._dispatch(Connected())

    async def channel_disconnected(self, reason: str) -> None:
        logger.info("channel disconnected: %s", reason)
        await self._dispatch(Disconnected(reason))

    async def channel_event(self, event: str, body: Dict[str, Any]) -> None:
        await self._dispatch(Inbound(event, body))

    # Internals

    async def _dispatch(self, event: Input) -> tuple[ChatState, List[Effect]]:
        async with self._lock:
            previous = self._state
            state, effects = transition(previous, event, self.identity)
            self._state = state
            if state.phase is not previous.phase:
                logger.info("session %s -> %s", previous.phase.value, state.phase.value)
            for effect in effects:
                await self._apply(effect)
        if state != previous and self._on_change is not None:
            self._on_change(state)
        return state, effects

    async def _apply(self, effect: Effect) -> None:
        if isinstance(effect, Emit):
            try:
                await self._channel.emit(effect.event, effect.body)
            except ChannelClosed as exc:
                logger.warning("%s", exc)
                self._notify(Notice(NOTICE_CHANNEL_ERROR, str(exc)))
        elif isinstance(effect, StartConversation):
            self._spawn(self._initialize())
        elif isinstance(effect, ResolveConversation):
            self._resolve_task = self._spawn(self._resolve(effect.conversation_id, effect.resolved_by))
        elif isinstance(effect, RestartTypingTimer):
            self._typing.restart()
        elif isinstance(effect, CancelTypingTimer):
            self._typing.cancel()
        elif isinstance(effect, CloseChannel):
            # Closing waits for the channel task, which may itself be waiting on this lock.
            self._spawn(self._channel.close())
        elif isinstance(effect, Notice):
            self._notify(effect)

    def _notify(self, notice: Notice) -> None:
        logger.info("notice %s %s", notice.kind, notice.detail)
        if self._on_notice is not None:
            self._on_notice(notice)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background task failed", exc_info=exc)

    async def _initialize(self) -> None:
        identity = require_ready(self.identity)
        try:
            result = await self._api.start_or_resume(identity)
            await self._dispatch(InitSucceeded(result.conversation_id, result.initial_messages))
        except ChatApiError as exc:
            logger.warning("could not start conversation: %s", exc)
            await self._dispatch(InitFailed(str(exc)))
        except asyncio.CancelledError:
            # Release the latch so a later open can start again.
            await self._dispatch(InitFailed("cancelled"))
            raise
        except Exception as exc:
            logger.exception("conversation start failed")
            await self._dispatch(InitFailed(f"{type(exc).__name__}: {exc}"))

    async def _resolve(self, conversation_id: str, resolved_by: Any) -> bool:
        try:
            await self._api.resolve(conversation_id, resolved_by)
        except ChatApiError as exc:
            logger.warning("could not resolve conversation %s: %s", conversation_id, exc)
            await self._dispatch(ResolveFailed(conversation_id, str(exc)))
            return False
        state, _ = await self._dispatch(ResolveSucceeded(conversation_id))
        return state.conversation_id is None

    async def _typing_idle(self) -> None:
        await self._dispatch(TypingIdle())
