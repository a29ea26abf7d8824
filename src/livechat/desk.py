"""In-memory support desk: the HTTP and websocket collaborator the chat client talks to."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aiohttp import WSMsgType, web

from .config import DeskConfig

logger = logging.getLogger(__name__)

CONVERSATION_STATUSES = {"active", "pending", "assigned", "resolved"}
CUSTOMER = "customer"
ADMIN = "admin"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ChatRecord:
    id: int
    conversation_id: str
    sender: str
    content: str
    timestamp: str
    read_by_customer: bool = False
    read_by_admin: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "content": self.content,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "read_by_customer": self.read_by_customer,
            "read_by_admin": self.read_by_admin,
        }


@dataclass
class Conversation:
    id: str
    customer_id: Any
    customer_name: str
    customer_email: str = ""
    customer_phone: Optional[str] = None
    status: str = "active"
    resolved_by: Any = None
    messages: List[ChatRecord] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        last = self.messages[-1].timestamp if self.messages else None
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "customerPhone": self.customer_phone,
            "status": self.status,
            "resolvedBy": self.resolved_by,
            "lastMessageTimestamp": last,
            "unreadByAdmin": sum(1 for m in self.messages if m.sender == CUSTOMER and not m.read_by_admin),
            "messages": [m.to_wire() for m in self.messages],
        }


class ConversationStore:
    """In-memory conversations with at most one unresolved conversation per customer.

    Message ids are integers, monotonic across the whole store.
    """

    def __init__(self, now_func: Callable[[], str] = _now_iso) -> None:
        self._now = now_func
        self._conversations: Dict[str, Conversation] = {}
        self._open_by_customer: Dict[str, str] = {}
        self._next_message_id = 1

    def start_or_resume(
        self,
        customer_id: Any,
        name: str,
        email: str = "",
        phone: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        key = str(customer_id)
        existing_id = self._open_by_customer.get(key)
        if existing_id is not None:
            conversation = self._conversations[existing_id]
            if conversation.status != "resolved":
                return conversation, False
        conversation = Conversation(
            id=f"conv_{secrets.token_urlsafe(8)}",
            customer_id=customer_id,
            customer_name=name,
            customer_email=email,
            customer_phone=phone,
        )
        self._conversations[conversation.id] = conversation
        self._open_by_customer[key] = conversation.id
        return conversation, True

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    def append(self, conversation_id: str, sender: str, content: str) -> ChatRecord | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.status == "resolved":
            return None
        record = ChatRecord(
            id=self._next_message_id,
            conversation_id=conversation_id,
            sender=sender,
            content=content,
            timestamp=self._now(),
            read_by_customer=sender == CUSTOMER,
            read_by_admin=sender == ADMIN,
        )
        self._next_message_id += 1
        conversation.messages.append(record)
        return record

    def mark_read(self, conversation_id: str, reader: str, message_ids: Optional[List[Any]] = None) -> List[int]:
        """Mark messages from the other party read; returns the ids that changed."""

        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []
        wanted = None if message_ids is None else {str(message_id) for message_id in message_ids}
        changed: List[int] = []
        for record in conversation.messages:
            if record.sender == reader:
                continue
            if wanted is not None and str(record.id) not in wanted:
                continue
            if reader == CUSTOMER and not record.read_by_customer:
                record.read_by_customer = True
                changed.append(record.id)
            elif reader == ADMIN and not record.read_by_admin:
                record.read_by_admin = True
                changed.append(record.id)
        return changed

    def set_status(self, conversation_id: str, status: str, resolved_by: Any = None) -> bool:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or status not in CONVERSATION_STATUSES:
            return False
        conversation.status = status
        if status == "resolved":
            conversation.resolved_by = resolved_by
            if self._open_by_customer.get(str(conversation.customer_id)) == conversation_id:
                self._open_by_customer.pop(str(conversation.customer_id), None)
        return True


Deliver = Callable[[Dict[str, Any]], None]


@dataclass
class Member:
    connection_id: str
    conversation_id: str
    is_admin: bool
    deliver: Deliver


class RoomHub:
    """Tracks which connections joined which conversation room."""

    def __init__(self) -> None:
        self._rooms: Dict[str, List[Member]] = {}

    def join(self, member: Member) -> None:
        members = self._rooms.setdefault(member.conversation_id, [])
        if any(m.connection_id == member.connection_id for m in members):
            return
        members.append(member)

    def leave(self, member: Member) -> None:
        members = self._rooms.get(member.conversation_id)
        if not members:
            return
        try:
            members.remove(member)
        except ValueError:
            return
        if not members:
            self._rooms.pop(member.conversation_id, None)

    def members(self, conversation_id: str) -> List[Member]:
        return list(self._rooms.get(conversation_id, []))

    def broadcast(self, conversation_id: str, frame: Dict[str, Any], *, exclude: str | None = None) -> None:
        for member in self.members(conversation_id):
            if member.connection_id == exclude:
                continue
            member.deliver(frame)


class Desk:
    def __init__(self, store: ConversationStore, hub: RoomHub, config: DeskConfig) -> None:
        self.store = store
        self.hub = hub
        self.config = config


DESK_KEY = web.AppKey("desk", Desk)


def _frame(event: str, body: Dict[str, Any]) -> Dict[str, Any]:
    return {"v": 1, "t": event, "body": body}


def _error_frame(code: str, message: str) -> Dict[str, Any]:
    return {"v": 1, "t": "error", "body": {"code": code, "message": message}}


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _not_found(message: str) -> web.Response:
    return web.json_response({"code": "not_found", "message": message}, status=404)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_chat_start(request: web.Request) -> web.Response:
    desk = request.app[DESK_KEY]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")

    user_id = body.get("userId")
    name = body.get("customerName")
    if isinstance(user_id, bool) or not isinstance(user_id, (int, str)) or user_id == "":
        return _invalid_request("userId required")
    if not isinstance(name, str) or not name.strip():
        return _invalid_request("customerName required")
    phone = body.get("customerPhone")
    conversation, created = desk.store.start_or_resume(
        user_id,
        name.strip(),
        email=str(body.get("customerEmail") or ""),
        phone=str(phone) if phone else None,
    )
    logger.info("%s conversation %s for customer %s", "started" if created else "resumed", conversation.id, user_id)
    return web.json_response(
        {
            "conversationId": conversation.id,
            "status": conversation.status,
            "created": created,
            "initialMessages": [m.to_wire() for m in conversation.messages],
        }
    )


async def handle_chat_resolve(request: web.Request) -> web.Response:
    desk = request.app[DESK_KEY]
    conversation_id = request.match_info["conversation_id"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")
    if not desk.store.set_status(conversation_id, "resolved", resolved_by=body.get("resolvedBy")):
        return _not_found("unknown conversation")
    desk.hub.broadcast(
        conversation_id,
        _frame("chat_status_update", {"conversationId": conversation_id, "newStatus": "resolved"}),
    )
    return web.json_response({"status": "ok"})


async def handle_chat_get(request: web.Request) -> web.Response:
    desk = request.app[DESK_KEY]
    conversation = desk.store.get(request.match_info["conversation_id"])
    if conversation is None:
        return _not_found("unknown conversation")
    return web.json_response(conversation.summary())


class _DeskConnection:
    """Per-websocket state: joined rooms plus the outbound queue."""

    def __init__(self, desk: Desk, enqueue: Deliver) -> None:
        self.desk = desk
        self.connection_id = f"ws_{secrets.token_urlsafe(8)}"
        self.enqueue = enqueue
        self.memberships: Dict[str, Member] = {}

    def _member(self, body: Dict[str, Any]) -> Member | None:
        conversation_id = body.get("conversationId")
        if conversation_id is None:
            return None
        return self.memberships.get(str(conversation_id))

    def _role(self, member: Member) -> str:
        return ADMIN if member.is_admin else CUSTOMER

    async def join_chat(self, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversationId")
        if conversation_id is None or self.desk.store.get(str(conversation_id)) is None:
            self.enqueue(_error_frame("not_found", "unknown conversation"))
            return
        member = Member(
            connection_id=self.connection_id,
            conversation_id=str(conversation_id),
            is_admin=bool(body.get("isAdmin", False)),
            deliver=self.enqueue,
        )
        self.memberships[member.conversation_id] = member
        self.desk.hub.join(member)
        logger.debug("%s joined %s", self.connection_id, member.conversation_id)

    async def send_message(self, body: Dict[str, Any]) -> None:
        member = self._member(body)
        content = body.get("content")
        if member is None or not isinstance(content, str) or not content.strip():
            self.enqueue(_error_frame("invalid_request", "join the conversation and send non-empty content"))
            return
        record = self.desk.store.append(member.conversation_id, self._role(member), content.strip())
        if record is None:
            self.enqueue(_error_frame("conversation_closed", "conversation is resolved"))
            return
        # The sender already shows its own optimistic copy.
        self.desk.hub.broadcast(member.conversation_id, _frame("new_message", record.to_wire()), exclude=self.connection_id)

    async def typing(self, body: Dict[str, Any]) -> None:
        await self._relay_typing(body, "user_typing")

    async def stop_typing(self, body: Dict[str, Any]) -> None:
        await self._relay_typing(body, "user_stopped_typing")

    async def _relay_typing(self, body: Dict[str, Any], event: str) -> None:
        member = self._member(body)
        if member is None:
            return
        self.desk.hub.broadcast(
            member.conversation_id,
            _frame(event, {"conversationId": member.conversation_id, "sender": self._role(member)}),
            exclude=self.connection_id,
        )

    async def mark_messages_read(self, body: Dict[str, Any]) -> None:
        member = self._member(body)
        if member is None:
            return
        reader = self._role(member)
        message_ids = body.get("messageIds")
        changed = self.desk.store.mark_read(
            member.conversation_id,
            reader,
            message_ids if isinstance(message_ids, list) else None,
        )
        if not changed:
            return
        event = "messages_read_by_admin" if reader == ADMIN else "messages_read_by_customer"
        self.desk.hub.broadcast(
            member.conversation_id,
            _frame(event, {"conversationId": member.conversation_id, "messageIds": changed}),
            exclude=self.connection_id,
        )

    async def chat_resolved_by_customer(self, body: Dict[str, Any]) -> None:
        member = self._member(body)
        if member is None:
            return
        self.desk.store.set_status(member.conversation_id, "resolved", resolved_by=body.get("resolvedBy"))
        self.desk.hub.broadcast(
            member.conversation_id,
            _frame(
                "chat_status_update",
                {
                    "conversationId": member.conversation_id,
                    "newStatus": "resolved",
                    "resolvedBy": body.get("resolvedBy"),
                },
            ),
            exclude=self.connection_id,
        )

    async def update_chat_status(self, body: Dict[str, Any]) -> None:
        member = self._member(body)
        new_status = body.get("newStatus")
        if member is None or not member.is_admin:
            self.enqueue(_error_frame("forbidden", "only agents change conversation status"))
            return
        if not isinstance(new_status, str) or not self.desk.store.set_status(member.conversation_id, new_status):
            self.enqueue(_error_frame("invalid_request", "unknown status"))
            return
        self.desk.hub.broadcast(
            member.conversation_id,
            _frame("chat_status_update", {"conversationId": member.conversation_id, "newStatus": new_status}),
        )

    def leave_all(self) -> None:
        for member in self.memberships.values():
            self.desk.hub.leave(member)
        self.memberships.clear()


FrameHandler = Callable[[_DeskConnection, Dict[str, Any]], Awaitable[None]]

FRAME_HANDLERS: Dict[str, FrameHandler] = {
    "join_chat": _DeskConnection.join_chat,
    "send_message": _DeskConnection.send_message,
    "typing": _DeskConnection.typing,
    "stop_typing": _DeskConnection.stop_typing,
    "mark_messages_read": _DeskConnection.mark_messages_read,
    "chat_resolved_by_customer": _DeskConnection.chat_resolved_by_customer,
    "update_chat_status": _DeskConnection.update_chat_status,
}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    desk = request.app[DESK_KEY]
    config = desk.config

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue(maxsize=config.outbound_queue_size)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: Dict[str, Any]) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                if loop.time() - last_activity >= config.ping_interval_s:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except (asyncio.CancelledError, ConnectionError):
            return

    connection = _DeskConnection(desk, enqueue)
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version"))
                    continue
                event = frame.get("t")
                body = frame.get("body") or {}
                if event == "ping":
                    enqueue({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                if event == "pong":
                    continue
                handler = FRAME_HANDLERS.get(event) if isinstance(event, str) else None
                if handler is None or not isinstance(body, dict):
                    enqueue(_error_frame("invalid_request", "unknown frame type"))
                    continue
                await handler(connection, body)
            elif msg.type == WSMsgType.ERROR:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        connection.leave_all()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws


def create_app(config: DeskConfig | None = None, *, store: ConversationStore | None = None) -> web.Application:
    desk = Desk(store or ConversationStore(), RoomHub(), config or DeskConfig())
    app = web.Application()
    app[DESK_KEY] = desk
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/api/chat/start", handle_chat_start)
    app.router.add_put("/api/chat/{conversation_id}/resolve", handle_chat_resolve)
    app.router.add_get("/api/chat/{conversation_id}", handle_chat_get)
    app.router.add_get("/v1/ws", websocket_handler)
    return app
