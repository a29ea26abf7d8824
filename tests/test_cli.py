import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from livechat.cli import _chat_console, build_parser, event_from_dict, main, simulate
from livechat.identity import CustomerIdentity
from livechat.session import Phase

SCRIPT = [
    {"type": "connecting"},
    {"type": "connected"},
    {"type": "init_succeeded", "conversationId": "c1", "initialMessages": []},
    {"type": "send", "text": "hi", "localId": "local-1"},
]


def _lines(output):
    return [json.loads(line) for line in output.getvalue().splitlines()]


class SimulateTests(unittest.TestCase):
    def test_effects_are_written_in_order(self):
        output = io.StringIO()
        state = simulate(SCRIPT, CustomerIdentity(user_id=7, name="Ann"), output)
        lines = _lines(output)

        self.assertIs(state.phase, Phase.ACTIVE)
        self.assertEqual(
            [line.get("effect") for line in lines[:-1]],
            ["StartConversation", "Emit", "Emit", "CancelTypingTimer", "Emit"],
        )
        self.assertEqual(lines[1], {"effect": "Emit", "event": "join_chat", "body": {"conversationId": "c1", "isAdmin": False}})
        self.assertEqual(lines[2]["body"]["userId"], 7)
        self.assertEqual(
            lines[-1],
            {"state": {"phase": "active", "conversationId": "c1", "connection": "connected", "messages": 1, "agentTyping": False}},
        )

    def test_without_identity_nothing_starts(self):
        output = io.StringIO()
        simulate([{"type": "connected"}], None, output)
        lines = _lines(output)
        self.assertEqual(lines[0], {"effect": "Notice", "kind": "identity_not_ready", "detail": ""})
        self.assertEqual(lines[-1]["state"]["phase"], "uninitialized")

    def test_unknown_event_type(self):
        with self.assertRaises(ValueError):
            event_from_dict({"type": "teleport"})


class MainTests(unittest.TestCase):
    def test_simulate_from_jsonl_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "events.jsonl"
            path.write_text("\n".join(json.dumps(event) for event in SCRIPT) + "\n", encoding="utf-8")
            output = io.StringIO()
            code = main(["simulate", "--user-id", "7", "--name", "Ann", "-f", str(path)], output=output)
        self.assertEqual(code, 0)
        self.assertEqual(_lines(output)[-1]["state"]["messages"], 1)

    def test_chat_requires_identity(self):
        output = io.StringIO()
        self.assertEqual(main(["chat"], output=output), 2)
        self.assertIn("error:", output.getvalue())

    def test_parser_requires_command(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])


class ChatConsoleTests(unittest.IsolatedAsyncioTestCase):
    async def test_console_commands(self):
        client = mock.AsyncMock()
        await _chat_console(client, io.StringIO("hello\n/end\n/quit\nignored\n"))

        client.open.assert_awaited_once()
        client.send_message.assert_awaited_once_with("hello")
        client.end_chat.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
