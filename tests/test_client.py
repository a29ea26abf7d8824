import asyncio
import unittest

from livechat.api import ChatApiError, StartResult
from livechat.channel import ChannelClosed
from livechat.client import LiveChatClient
from livechat.config import ChatConfig
from livechat.identity import CustomerIdentity, IdentityNotReady
from livechat.session import (
    NOTICE_INIT_FAILED,
    NOTICE_RESOLVE_FAILED,
    NOTICE_SEND_REJECTED,
    NOTICE_SESSION_ENDED,
    ConnectionState,
    Phase,
)
from tests.ws_receive_util import wait_until

ANN = CustomerIdentity(user_id=7, name="Ann", email="ann@example.com")


class FakeChannel:
    """Stands in for ChatChannel; tests drive its lifecycle by hand."""

    def __init__(self):
        self.handler = None
        self.emitted = []
        self.opened = 0
        self.closed = 0
        self.is_connected = False
        self.emit_delay = 0.0

    def attach(self, handler):
        self.handler = handler

    def open(self):
        self.opened += 1

    @property
    def connected(self):
        return self.is_connected

    async def emit(self, event, body):
        if not self.is_connected:
            raise ChannelClosed(f"cannot emit {event}: channel is not connected")
        if self.emit_delay:
            await asyncio.sleep(self.emit_delay)
        self.emitted.append((event, body, asyncio.get_running_loop().time()))

    async def close(self):
        self.closed += 1
        if self.is_connected:
            self.is_connected = False
            await self.handler.channel_disconnected("closed")

    async def connect(self):
        await self.handler.channel_connecting()
        self.is_connected = True
        await self.handler.channel_connected()

    async def drop(self, reason="network"):
        self.is_connected = False
        await self.handler.channel_disconnected(reason)

    async def deliver(self, event, body):
        await self.handler.channel_event(event, body)

    def events(self, name):
        return [body for event, body, _ in self.emitted if event == name]


class FakeApi:
    def __init__(self, conversation_id="c1", backlog=()):
        self.result = StartResult(conversation_id, tuple(backlog))
        self.start_calls = 0
        self.start_error = None
        self.gate = None
        self.resolve_calls = []
        self.resolve_error = None
        self.closed = False

    async def start_or_resume(self, identity):
        self.start_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.start_error is not None:
            raise self.start_error
        return self.result

    async def resolve(self, conversation_id, resolved_by):
        self.resolve_calls.append((conversation_id, resolved_by))
        if self.resolve_error is not None:
            raise self.resolve_error

    async def close(self):
        self.closed = True


class LiveChatClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.channel = FakeChannel()
        self.api = FakeApi()
        self.notices = []
        self.changes = []
        self.client = self._client(ANN)

    async def asyncTearDown(self):
        await self.client.close()

    def _client(self, identity, **config):
        return LiveChatClient(
            identity,
            ChatConfig(**config),
            api=self.api,
            channel=self.channel,
            on_change=self.changes.append,
            on_notice=self.notices.append,
        )

    async def _start(self):
        await self.client.open()
        await self.channel.connect()
        await wait_until(lambda: self.client.state.initialized, message="session initialized")

    def _notice_kinds(self):
        return [notice.kind for notice in self.notices]

    async def test_open_requires_identity(self):
        for identity in (None, CustomerIdentity(user_id=7, name=" ")):
            client = self._client(identity)
            with self.assertRaises(IdentityNotReady):
                await client.open()
        self.assertEqual(self.channel.opened, 0)

    async def test_reconnect_cycles_start_once(self):
        await self._start()
        for _ in range(3):
            await self.channel.drop()
            self.assertIs(self.client.state.connection, ConnectionState.DISCONNECTED)
            await self.channel.connect()
        await asyncio.sleep(0.05)

        self.assertEqual(self.api.start_calls, 1)
        self.assertEqual(len(self.channel.events("join_chat")), 4)
        self.assertEqual(self.client.state.conversation_id, "c1")

    async def test_concurrent_connects_share_one_start(self):
        self.api.gate = asyncio.Event()
        await self.client.open()
        await self.channel.connect()
        await wait_until(lambda: self.api.start_calls == 1, message="start call")
        self.assertIs(self.client.state.phase, Phase.INITIALIZING)

        await self.channel.drop()
        await self.channel.connect()
        self.api.gate.set()
        await wait_until(lambda: self.client.state.initialized, message="session initialized")

        self.assertEqual(self.api.start_calls, 1)
        self.assertEqual(self.channel.events("join_chat"), [{"conversationId": "c1", "isAdmin": False}])

    async def test_backlog_receipts_are_batched(self):
        self.api.result = StartResult(
            "c1",
            tuple(
                {"id": message_id, "content": str(message_id), "sender": "admin", "read_by_customer": False}
                for message_id in (1, 2, 3)
            ),
        )
        await self._start()
        self.assertEqual(
            self.channel.events("mark_messages_read"),
            [{"conversationId": "c1", "readerType": "customer", "messageIds": [1, 2, 3]}],
        )
        names = [event for event, _, _ in self.channel.emitted]
        self.assertLess(names.index("join_chat"), names.index("mark_messages_read"))

    async def test_send_message_payload(self):
        await self._start()
        self.assertTrue(await self.client.send_message("hi"))

        self.assertEqual(
            self.channel.events("send_message"),
            [{"conversationId": "c1", "content": "hi", "sender": "customer", "userId": 7, "customerName": "Ann"}],
        )
        message = self.client.state.messages[-1]
        self.assertEqual((message.text, message.read), ("hi", True))
        self.assertTrue(message.id.startswith("local-"))
        self.assertIs(self.changes[-1], self.client.state)

    async def test_send_while_disconnected_is_rejected(self):
        await self._start()
        await self.channel.drop()
        self.assertFalse(await self.client.send_message("hi"))
        self.assertIn(NOTICE_SEND_REJECTED, self._notice_kinds())
        self.assertEqual(self.client.state.messages, ())
        self.assertEqual(self.channel.events("send_message"), [])

    async def test_typing_debounce_sends_one_stop(self):
        self.client = self._client(ANN, typing_idle_s=0.2)
        await self._start()
        for _ in range(3):
            await self.client.notify_typing("h")
            await asyncio.sleep(0.03)
        await asyncio.sleep(0.4)

        typing_times = [at for event, _, at in self.channel.emitted if event == "typing"]
        stop_times = [at for event, _, at in self.channel.emitted if event == "stop_typing"]
        self.assertEqual(len(typing_times), 3)
        self.assertEqual(len(stop_times), 1)
        self.assertGreaterEqual(stop_times[0] - typing_times[-1], 0.19)
        self.assertFalse(self.client.typing_pending)

    async def test_keystroke_during_slow_emit_supersedes_fired_timer(self):
        self.client = self._client(ANN, typing_idle_s=0.1)
        await self._start()
        await self.client.notify_typing("h")
        await asyncio.sleep(0.08)
        # The first timer expires while this keystroke is still being sent.
        self.channel.emit_delay = 0.05
        await self.client.notify_typing("he")
        self.channel.emit_delay = 0.0
        await asyncio.sleep(0.3)

        names = [event for event, _, _ in self.channel.emitted if event in ("typing", "stop_typing")]
        self.assertEqual(names, ["typing", "typing", "stop_typing"])
        typing_times = [at for event, _, at in self.channel.emitted if event == "typing"]
        stop_time = [at for event, _, at in self.channel.emitted if event == "stop_typing"][0]
        self.assertGreaterEqual(stop_time - typing_times[-1], 0.09)

    async def test_draft_follows_typing_and_clears_on_send(self):
        await self._start()
        await self.client.notify_typing("hel")
        self.assertEqual(self.client.draft, "hel")
        await self.client.send_message("hello")
        self.assertEqual(self.client.draft, "")

        await self.client.notify_typing("later")
        await self.channel.drop()
        self.assertFalse(await self.client.send_message("later"))
        self.assertEqual(self.client.draft, "later")

    async def test_send_cancels_pending_typing_timer(self):
        self.client = self._client(ANN, typing_idle_s=0.2)
        await self._start()
        await self.client.notify_typing("hel")
        self.assertTrue(self.client.typing_pending)
        await self.client.send_message("hello")
        self.assertFalse(self.client.typing_pending)
        await asyncio.sleep(0.3)
        self.assertEqual(len(self.channel.events("stop_typing")), 1)

    async def test_end_chat_while_connected(self):
        await self._start()
        self.assertTrue(await self.client.end_chat())
        self.assertEqual(
            self.channel.events("chat_resolved_by_customer"),
            [{"conversationId": "c1", "resolvedBy": 7}],
        )
        await wait_until(lambda: self.channel.closed >= 1, message="channel closed")
        self.assertIs(self.client.state.phase, Phase.ENDED)
        self.assertEqual(self.api.resolve_calls, [])

    async def test_end_chat_falls_back_to_resolve_call(self):
        await self._start()
        await self.channel.drop()
        self.assertTrue(await self.client.end_chat())
        self.assertEqual(self.api.resolve_calls, [("c1", 7)])
        self.assertIsNone(self.client.state.conversation_id)
        self.assertIn(NOTICE_SESSION_ENDED, self._notice_kinds())

    async def test_failed_resolve_keeps_conversation(self):
        await self._start()
        await self.client.send_message("still there?")
        await self.channel.drop()
        self.api.resolve_error = ChatApiError("PUT responded 503", status=503)

        self.assertFalse(await self.client.end_chat())
        state = self.client.state
        self.assertEqual(state.conversation_id, "c1")
        self.assertEqual(len(state.messages), 1)
        self.assertFalse(state.resolving)
        self.assertIn(NOTICE_RESOLVE_FAILED, self._notice_kinds())

    async def test_start_failure_closes_channel_and_allows_retry(self):
        self.api.start_error = ChatApiError("POST responded 500", status=500)
        await self.client.open()
        await self.channel.connect()
        await wait_until(lambda: self.channel.closed >= 1, message="channel closed")
        self.assertIs(self.client.state.phase, Phase.UNINITIALIZED)
        self.assertIn(NOTICE_INIT_FAILED, self._notice_kinds())

        self.api.start_error = None
        await self.channel.connect()
        await wait_until(lambda: self.client.state.initialized, message="session initialized")
        self.assertEqual(self.api.start_calls, 2)

    async def test_close_during_start_allows_reopen(self):
        self.api.gate = asyncio.Event()
        await self.client.open()
        await self.channel.connect()
        await wait_until(lambda: self.api.start_calls == 1, message="start call")

        await self.client.close()
        self.assertIs(self.client.state.phase, Phase.UNINITIALIZED)
        self.api.gate.set()

        await self.client.open()
        await self.channel.connect()
        await wait_until(lambda: self.client.state.initialized, message="session initialized")
        self.assertEqual(self.api.start_calls, 2)
        self.assertEqual(self.channel.events("join_chat"), [{"conversationId": "c1", "isAdmin": False}])

    async def test_unexpected_start_error_releases_latch(self):
        self.api.start_error = RuntimeError("boom")
        await self.client.open()
        await self.channel.connect()
        await wait_until(lambda: self.channel.closed >= 1, message="channel closed")
        self.assertIs(self.client.state.phase, Phase.UNINITIALIZED)
        self.assertIn("RuntimeError: boom", [notice.detail for notice in self.notices])

        self.api.start_error = None
        await self.channel.connect()
        await wait_until(lambda: self.client.state.initialized, message="session initialized")
        self.assertEqual(self.api.start_calls, 2)

    async def test_agent_resolution_tears_down(self):
        await self._start()
        await self.client.notify_typing("wait")
        self.assertTrue(self.client.typing_pending)

        await self.channel.deliver("chat_status_update", {"conversationId": "c1", "newStatus": "resolved"})
        self.assertFalse(self.client.typing_pending)
        self.assertIs(self.client.state.phase, Phase.ENDED)
        self.assertIn("resolved_by_agent", [notice.detail for notice in self.notices])
        await wait_until(lambda: self.channel.closed >= 1, message="channel closed")

        await self.channel.deliver("new_message", {"conversationId": "c1", "id": 5, "content": "late", "sender": "admin"})
        self.assertEqual(self.client.state.messages, ())

    async def test_agent_message_is_acknowledged(self):
        await self._start()
        await self.channel.deliver(
            "new_message",
            {"conversationId": "c1", "id": 12, "content": "Hello Ann", "sender": "admin", "timestamp": "2024-06-06 10:00:00"},
        )
        message = self.client.state.messages[-1]
        self.assertEqual((message.text, message.display_time, message.read), ("Hello Ann", "10:00", True))
        self.assertEqual(
            self.channel.events("mark_messages_read")[-1],
            {"conversationId": "c1", "readerType": "customer", "messageIds": [12]},
        )

    async def test_reset_tears_down_silently(self):
        await self._start()
        await self.client.send_message("hello")
        await self.client.reset()

        self.assertIs(self.client.state.phase, Phase.ENDED)
        self.assertEqual(self.client.state.messages, ())
        self.assertEqual(self.channel.events("chat_resolved_by_customer"), [])
        self.assertNotIn(NOTICE_SESSION_ENDED, self._notice_kinds())
        await wait_until(lambda: self.channel.closed >= 1, message="channel closed")

    async def test_close_disconnects(self):
        await self._start()
        await self.client.close()
        self.assertGreaterEqual(self.channel.closed, 1)
        self.assertIs(self.client.state.connection, ConnectionState.DISCONNECTED)
        self.assertFalse(self.api.closed)


if __name__ == "__main__":
    unittest.main()
