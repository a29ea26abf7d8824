"""Conversation session state machine.

Every input (channel lifecycle, inbound frames, user actions, timer expiry and
the results of remote calls) goes through :func:`transition`, which returns
the next :class:`ChatState` and the effects the caller must perform in order.
The function does no I/O, so callers are free to serialize it however their
runtime requires.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .identity import CustomerIdentity
from .models import LOCAL_ROLE, REMOTE_ROLE, Message, Sender, wire_id

logger = logging.getLogger(__name__)

NOTICE_SESSION_ENDED = "session_ended"
NOTICE_INIT_FAILED = "init_failed"
NOTICE_SEND_REJECTED = "send_rejected"
NOTICE_END_REJECTED = "end_rejected"
NOTICE_RESOLVE_FAILED = "resolve_failed"
NOTICE_IDENTITY_NOT_READY = "identity_not_ready"
NOTICE_DISCONNECTED = "disconnected"
NOTICE_CHANNEL_ERROR = "channel_error"

STATUS_RESOLVED = "resolved"


class Phase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    ENDED = "ended"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ChatState:
    phase: Phase = Phase.UNINITIALIZED
    conversation_id: Optional[str] = None
    connection: ConnectionState = ConnectionState.DISCONNECTED
    messages: Tuple[Message, ...] = ()
    agent_typing: bool = False
    resolving: bool = False
    status: Optional[str] = None

    @property
    def initialized(self) -> bool:
        return self.phase is Phase.ACTIVE

    @property
    def connected(self) -> bool:
        return self.connection is ConnectionState.CONNECTED


# Inputs


@dataclass(frozen=True)
class Connecting:
    pass


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class InitSucceeded:
    conversation_id: str
    backlog: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class InitFailed:
    error: str


@dataclass(frozen=True)
class Inbound:
    event: str
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendText:
    text: str
    local_id: str
    sent_at: Optional[datetime] = None


@dataclass(frozen=True)
class Typed:
    pass


@dataclass(frozen=True)
class TypingIdle:
    pass


@dataclass(frozen=True)
class EndChat:
    pass


@dataclass(frozen=True)
class ResolveSucceeded:
    conversation_id: str


@dataclass(frozen=True)
class ResolveFailed:
    conversation_id: str
    error: str


@dataclass(frozen=True)
class Reset:
    pass


Input = Union[
    Connecting,
    Connected,
    Disconnected,
    InitSucceeded,
    InitFailed,
    Inbound,
    SendText,
    Typed,
    TypingIdle,
    EndChat,
    ResolveSucceeded,
    ResolveFailed,
    Reset,
]


# Effects


@dataclass(frozen=True)
class Emit:
    event: str
    body: Dict[str, Any]


@dataclass(frozen=True)
class StartConversation:
    pass


@dataclass(frozen=True)
class ResolveConversation:
    conversation_id: str
    resolved_by: Any


@dataclass(frozen=True)
class RestartTypingTimer:
    pass


@dataclass(frozen=True)
class CancelTypingTimer:
    pass


@dataclass(frozen=True)
class CloseChannel:
    pass


@dataclass(frozen=True)
class Notice:
    kind: str
    detail: str = ""


Effect = Union[Emit, StartConversation, ResolveConversation, RestartTypingTimer, CancelTypingTimer, CloseChannel, Notice]
Result = Tuple[ChatState, List[Effect]]


def _join(conversation_id: str) -> Emit:
    return Emit("join_chat", {"conversationId": conversation_id, "isAdmin": False})


def _typing_frame(event: str, conversation_id: str) -> Emit:
    return Emit(event, {"conversationId": conversation_id, "sender": LOCAL_ROLE})


def _read_receipt(conversation_id: str, message_ids: List[str]) -> Emit:
    return Emit(
        "mark_messages_read",
        {
            "conversationId": conversation_id,
            "readerType": LOCAL_ROLE,
            "messageIds": [wire_id(message_id) for message_id in message_ids],
        },
    )


def _acknowledge_unread(state: ChatState) -> Result:
    """Batch every unread remote message into one receipt and mark them read."""

    unread = [m.id for m in state.messages if m.is_remote and not m.read and m.id]
    if not unread or state.conversation_id is None:
        return state, []
    unread_ids = set(unread)
    messages = tuple(replace(m, read=True) if m.id in unread_ids else m for m in state.messages)
    return replace(state, messages=messages), [_read_receipt(state.conversation_id, unread)]


def _teardown(state: ChatState, reason: str | None) -> Result:
    ended = replace(
        state,
        phase=Phase.ENDED,
        conversation_id=None,
        messages=(),
        agent_typing=False,
        resolving=False,
        status=None,
    )
    effects: List[Effect] = [CancelTypingTimer(), CloseChannel()]
    if reason:
        effects.append(Notice(NOTICE_SESSION_ENDED, reason))
    return ended, effects


def _scoped(state: ChatState, body: Dict[str, Any], *, allow_missing: bool = False) -> bool:
    if state.conversation_id is None:
        return False
    conversation_id = body.get("conversationId")
    if conversation_id is None:
        return allow_missing
    return str(conversation_id) == state.conversation_id


# Channel lifecycle


def _on_connecting(state: ChatState, event: Connecting, identity: Optional[CustomerIdentity]) -> Result:
    return replace(state, connection=ConnectionState.CONNECTING), []


def _on_connected(state: ChatState, event: Connected, identity: Optional[CustomerIdentity]) -> Result:
    state = replace(state, connection=ConnectionState.CONNECTED)
    if state.phase is Phase.ACTIVE and state.conversation_id is not None:
        # Reconnect: rejoin the known room, never re-fetch the backlog.
        state, receipts = _acknowledge_unread(state)
        return state, [_join(state.conversation_id), *receipts]
    if state.phase is Phase.INITIALIZING:
        return state, []
    if identity is None or not identity.is_ready():
        return state, [Notice(NOTICE_IDENTITY_NOT_READY)]
    return replace(state, phase=Phase.INITIALIZING), [StartConversation()]


def _on_disconnected(state: ChatState, event: Disconnected, identity: Optional[CustomerIdentity]) -> Result:
    if state.connection is ConnectionState.DISCONNECTED:
        return state, []
    return replace(state, connection=ConnectionState.DISCONNECTED), [Notice(NOTICE_DISCONNECTED, event.reason)]


# Session initializer results


def _on_init_succeeded(state: ChatState, event: InitSucceeded, identity: Optional[CustomerIdentity]) -> Result:
    if state.phase is not Phase.INITIALIZING:
        logger.debug("ignoring late start result for %s in phase %s", event.conversation_id, state.phase.value)
        return state, []
    backlog = tuple(Message.from_wire(entry) for entry in event.backlog if isinstance(entry, dict))
    state = replace(
        state,
        phase=Phase.ACTIVE,
        conversation_id=event.conversation_id,
        messages=backlog,
        agent_typing=False,
        status="active",
    )
    if not state.connected:
        return state, []
    state, receipts = _acknowledge_unread(state)
    return state, [_join(event.conversation_id), *receipts]


def _on_init_failed(state: ChatState, event: InitFailed, identity: Optional[CustomerIdentity]) -> Result:
    if state.phase is not Phase.INITIALIZING:
        return state, []
    state = replace(state, phase=Phase.UNINITIALIZED, conversation_id=None)
    return state, [CloseChannel(), Notice(NOTICE_INIT_FAILED, event.error)]


# Inbound channel events


def _on_new_message(state: ChatState, body: Dict[str, Any]) -> Result:
    if not _scoped(state, body, allow_missing=True):
        return state, []
    message = Message.from_wire(body)
    effects: List[Effect] = []
    if message.is_remote and message.id and state.connected and state.conversation_id is not None:
        effects.append(_read_receipt(state.conversation_id, [message.id]))
        message = replace(message, read=True)
    return replace(state, messages=state.messages + (message,)), effects


def _on_user_typing(state: ChatState, body: Dict[str, Any]) -> Result:
    if body.get("sender") != REMOTE_ROLE or not _scoped(state, body):
        return state, []
    return replace(state, agent_typing=True), []


def _on_user_stopped_typing(state: ChatState, body: Dict[str, Any]) -> Result:
    if body.get("sender") != REMOTE_ROLE or not _scoped(state, body):
        return state, []
    return replace(state, agent_typing=False), []


def _on_messages_read(state: ChatState, body: Dict[str, Any]) -> Result:
    if not _scoped(state, body):
        return state, []
    raw_ids = body.get("messageIds")
    wanted = None if not isinstance(raw_ids, list) else {str(message_id) for message_id in raw_ids}
    changed = False
    messages: List[Message] = []
    for message in state.messages:
        if message.sender is Sender.LOCAL and not message.read and (wanted is None or message.id in wanted):
            message = replace(message, read=True)
            changed = True
        messages.append(message)
    if not changed:
        return state, []
    return replace(state, messages=tuple(messages)), []


def _on_status_update(state: ChatState, body: Dict[str, Any]) -> Result:
    if not _scoped(state, body):
        return state, []
    new_status = body.get("newStatus")
    if new_status == STATUS_RESOLVED:
        logger.info("conversation %s resolved by support", state.conversation_id)
        return _teardown(state, "resolved_by_agent")
    if not isinstance(new_status, str):
        return state, []
    return replace(state, status=new_status), []


InboundHandler = Callable[[ChatState, Dict[str, Any]], Result]

INBOUND_HANDLERS: Dict[str, InboundHandler] = {
    "new_message": _on_new_message,
    "user_typing": _on_user_typing,
    "user_stopped_typing": _on_user_stopped_typing,
    "messages_read_by_admin": _on_messages_read,
    "chat_status_update": _on_status_update,
}


def _on_inbound(state: ChatState, event: Inbound, identity: Optional[CustomerIdentity]) -> Result:
    handler = INBOUND_HANDLERS.get(event.event)
    if handler is None:
        logger.debug("dropping unhandled channel event %s", event.event)
        return state, []
    return handler(state, event.body)


# Outbound user actions


def _reject_send(state: ChatState, reason: str) -> Result:
    logger.warning("message not sent: %s", reason)
    return state, [Notice(NOTICE_SEND_REJECTED, reason)]


def _on_send_text(state: ChatState, event: SendText, identity: Optional[CustomerIdentity]) -> Result:
    text = event.text.strip()
    if not text:
        return _reject_send(state, "empty")
    if state.conversation_id is None:
        return _reject_send(state, "no_conversation")
    if not state.connected:
        return _reject_send(state, "disconnected")
    if identity is None:
        return _reject_send(state, NOTICE_IDENTITY_NOT_READY)

    # The placeholder id is never reconciled with the server id.
    message = Message(
        id=event.local_id,
        text=text,
        sender=Sender.LOCAL,
        timestamp=event.sent_at,
        read=True,
        pending=True,
    )
    state = replace(state, messages=state.messages + (message,))
    return state, [
        Emit(
            "send_message",
            {
                "conversationId": state.conversation_id,
                "content": text,
                "sender": LOCAL_ROLE,
                "userId": identity.user_id,
                "customerName": identity.name,
            },
        ),
        CancelTypingTimer(),
        _typing_frame("stop_typing", state.conversation_id),
    ]


def _on_typed(state: ChatState, event: Typed, identity: Optional[CustomerIdentity]) -> Result:
    if state.conversation_id is None or not state.connected:
        return state, []
    return state, [_typing_frame("typing", state.conversation_id), RestartTypingTimer()]


def _on_typing_idle(state: ChatState, event: TypingIdle, identity: Optional[CustomerIdentity]) -> Result:
    if state.conversation_id is None or not state.connected:
        return state, []
    return state, [_typing_frame("stop_typing", state.conversation_id)]


def _on_end_chat(state: ChatState, event: EndChat, identity: Optional[CustomerIdentity]) -> Result:
    if state.conversation_id is None or identity is None:
        return state, [Notice(NOTICE_END_REJECTED, "no_active_chat")]
    if state.resolving:
        return state, []
    if state.connected:
        announce = Emit(
            "chat_resolved_by_customer",
            {"conversationId": state.conversation_id, "resolvedBy": identity.user_id},
        )
        state, effects = _teardown(state, "resolved_by_customer")
        return state, [announce, *effects]
    return replace(state, resolving=True), [ResolveConversation(state.conversation_id, identity.user_id)]


def _on_resolve_succeeded(state: ChatState, event: ResolveSucceeded, identity: Optional[CustomerIdentity]) -> Result:
    if state.conversation_id != event.conversation_id:
        return replace(state, resolving=False), []
    return _teardown(state, "resolved_by_customer")


def _on_resolve_failed(state: ChatState, event: ResolveFailed, identity: Optional[CustomerIdentity]) -> Result:
    return replace(state, resolving=False), [Notice(NOTICE_RESOLVE_FAILED, event.error)]


def _on_reset(state: ChatState, event: Reset, identity: Optional[CustomerIdentity]) -> Result:
    return _teardown(state, None)


_HANDLERS: Dict[type, Callable[[ChatState, Any, Optional[CustomerIdentity]], Result]] = {
    Connecting: _on_connecting,
    Connected: _on_connected,
    Disconnected: _on_disconnected,
    InitSucceeded: _on_init_succeeded,
    InitFailed: _on_init_failed,
    Inbound: _on_inbound,
    SendText: _on_send_text,
    Typed: _on_typed,
    TypingIdle: _on_typing_idle,
    EndChat: _on_end_chat,
    ResolveSucceeded: _on_resolve_succeeded,
    ResolveFailed: _on_resolve_failed,
    Reset: _on_reset,
}


def transition(state: ChatState, event: Input, identity: Optional[CustomerIdentity]) -> Result:
    """Apply one input to ``state`` and return the new state plus ordered effects."""

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"unsupported input: {type(event).__name__}")
    return handler(state, event, identity)
