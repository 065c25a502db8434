import asyncio
import json
import unittest

from claude_headless.errors import ClaudeAPIError, ClaudeSessionError
from claude_headless.models import JsonResponse, QueryOptions, SessionData, SessionMetadata, TextResponse
from claude_headless.session import ACTIVE, CONTINUING, NEW, RESUMED, Session, SessionManager
from claude_headless.stream_parser import MessageStream


def _json(session_id: str, num_turns: int, cost: float, result: str = "ok") -> JsonResponse:
    return JsonResponse.from_payload(
        {"result": result, "session_id": session_id, "num_turns": num_turns, "total_cost_usd": cost}, 0
    )


class _ChunkSource:
    def __init__(self, text: str):
        self._chunks = [text]
        self.exit_code = None
        self.stderr = ""

    async def __anext__(self):
        if not self._chunks:
            self.exit_code = 0
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        pass


class _FakeClient:
    def __init__(self, responses=(), stream_text: str = ""):
        self.calls: list[tuple] = []
        self._responses = list(responses)
        self._stream_text = stream_text

    def session_options(self) -> QueryOptions:
        return QueryOptions(output_format="json")

    async def query(self, prompt, options):
        self.calls.append(("query", prompt, options))
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def stream(self, prompt, options):
        self.calls.append(("stream", prompt, options))
        return MessageStream(_ChunkSource(self._stream_text))

    def stream_stdin(self, payload, options):
        self.calls.append(("stream_stdin", payload, options))
        return MessageStream(_ChunkSource(self._stream_text))


def _stream_text(session_id: str, parts: list[str], num_turns: int = 1, cost: float = 0.01) -> str:
    lines = [{"type": "init", "session_id": session_id}]
    lines += [{"type": "assistant", "message": {"content": [{"type": "text", "text": part}]}} for part in parts]
    lines.append(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": "".join(parts),
            "session_id": session_id,
            "num_turns": num_turns,
            "total_cost_usd": cost,
        }
    )
    return "".join(json.dumps(line) + "\n" for line in lines)


async def _drain(stream: MessageStream) -> list:
    async with stream:
        return [message async for message in stream]


class SessionTests(unittest.TestCase):
    def test_first_exchange_confirms_id_and_threads_it(self) -> None:
        client = _FakeClient([_json("S1", 1, 0.01), _json("S1", 2, 0.03)])
        session = Session(client, QueryOptions(output_format="json"))
        self.assertEqual(NEW, session.state)

        asyncio.run(session.send("first"))
        self.assertEqual(ACTIVE, session.state)
        self.assertEqual("S1", session.session_id)

        asyncio.run(session.send("second"))
        self.assertIsNone(client.calls[0][2].session_id)
        self.assertEqual("S1", client.calls[1][2].session_id)
        self.assertEqual(
            ["user", "assistant", "user", "assistant"],
            [turn.role for turn in session.history],
        )
        self.assertEqual(2, session.metadata.turns)
        self.assertEqual(0.03, session.metadata.total_cost_usd)

    def test_metadata_never_decreases(self) -> None:
        client = _FakeClient([_json("S1", 3, 0.05), _json("S1", 1, 0.01)])
        session = Session(client, QueryOptions(output_format="json"))

        asyncio.run(session.send("a"))
        created_at = session.metadata.created_at
        asyncio.run(session.send("b"))

        self.assertEqual(3, session.metadata.turns)
        self.assertEqual(0.05, session.metadata.total_cost_usd)
        self.assertEqual(created_at, session.metadata.created_at)

    def test_user_turn_is_appended_before_dispatch(self) -> None:
        client = _FakeClient([ClaudeAPIError("disk full")])
        session = Session(client, QueryOptions(output_format="json"))

        with self.assertRaises(ClaudeAPIError):
            asyncio.run(session.send("write"))

        self.assertEqual(["user"], [turn.role for turn in session.history])
        self.assertEqual(NEW, session.state)

    def test_text_response_appends_turn_without_confirming(self) -> None:
        client = _FakeClient([TextResponse(text="4\n", exit_code=0)])
        session = Session(client, QueryOptions())

        asyncio.run(session.send("2+2"))

        self.assertEqual("4\n", session.history[-1].content)
        self.assertIsNone(session.metadata)
        self.assertEqual(NEW, session.state)

    def test_export_requires_a_completed_exchange(self) -> None:
        session = Session(_FakeClient(), QueryOptions())
        with self.assertRaises(ClaudeSessionError):
            session.export()

    def test_export_is_a_detached_copy(self) -> None:
        session = Session(_FakeClient([_json("S1", 1, 0.01)]), QueryOptions(output_format="json"))
        asyncio.run(session.send("hi"))

        exported = session.export()
        exported.history.clear()
        exported.metadata.turns = 99

        self.assertEqual(2, len(session.history))
        self.assertEqual(1, session.metadata.turns)

    def test_import_replaces_state_and_resumes(self) -> None:
        client = _FakeClient([_json("S9", 4, 0.2)])
        session = Session(client, QueryOptions(output_format="json"))
        data = SessionData.from_dict(
            {
                "metadata": {"id": "S9", "created_at": "2026-01-01T00:00:00.000+00:00", "last_active": "2026-01-01T00:00:00.000+00:00", "turns": 3, "total_cost_usd": 0.1},
                "history": [
                    {"role": "user", "content": "old", "timestamp": "2026-01-01T00:00:00.000+00:00"},
                    {"role": "assistant", "content": "reply", "timestamp": "2026-01-01T00:00:01.000+00:00"},
                ],
            }
        )

        session.import_data(data)
        data.history.clear()
        self.assertEqual(RESUMED, session.state)
        self.assertEqual(2, len(session.history))

        asyncio.run(session.send("new"))
        self.assertEqual("S9", client.calls[0][2].session_id)
        self.assertEqual(4, session.metadata.turns)
        self.assertEqual("2026-01-01T00:00:00.000+00:00", session.metadata.created_at)

    def test_continue_last_until_confirmed(self) -> None:
        client = _FakeClient([_json("S5", 1, 0.01), _json("S5", 2, 0.02)])
        session = Session(client, QueryOptions(output_format="json"), continue_last=True)
        self.assertEqual(CONTINUING, session.state)

        asyncio.run(session.send("a"))
        asyncio.run(session.send("b"))

        first, second = client.calls[0][2], client.calls[1][2]
        self.assertTrue(first.continue_last)
        self.assertIsNone(first.session_id)
        self.assertFalse(second.continue_last)
        self.assertEqual("S5", second.session_id)

    def test_overrides_cannot_change_session_directive(self) -> None:
        client = _FakeClient([_json("S1", 1, 0.0)])
        session = Session(client, QueryOptions(output_format="json"), session_id="S1")

        asyncio.run(session.send("x", session_id="OTHER", continue_last=True, timeout=3.0))

        options = client.calls[0][2]
        self.assertEqual("S1", options.session_id)
        self.assertFalse(options.continue_last)
        self.assertEqual(3.0, options.timeout)

    def test_clear_resets_to_new(self) -> None:
        session = Session(_FakeClient([_json("S1", 1, 0.01)]), QueryOptions(output_format="json"))
        asyncio.run(session.send("hi"))

        session.clear()

        self.assertEqual(NEW, session.state)
        self.assertIsNone(session.session_id)
        self.assertEqual([], session.history)

    def test_stream_records_accumulated_text_and_terminal_metadata(self) -> None:
        client = _FakeClient(stream_text=_stream_text("S3", ["Hel", "lo"], num_turns=2, cost=0.04))
        session = Session(client, QueryOptions(output_format="json"))

        messages = asyncio.run(_drain(session.stream("greet")))

        self.assertEqual(4, len(messages))
        self.assertEqual("stream-json", client.calls[0][2].output_format)
        self.assertEqual("S3", session.session_id)
        self.assertEqual(["greet", "Hello"], [turn.content for turn in session.history])
        self.assertEqual(2, session.metadata.turns)

    def test_send_multiple_uses_stream_json_stdin(self) -> None:
        client = _FakeClient(stream_text=_stream_text("S4", ["fine"]))
        session = Session(client, QueryOptions(output_format="json"))

        asyncio.run(_drain(session.send_multiple([("user", "hi"), ("assistant", "hello"), ("user", "how are you")])))

        kind, payload, options = client.calls[0]
        self.assertEqual("stream_stdin", kind)
        self.assertEqual(3, len(payload.splitlines()))
        self.assertEqual("stream-json", options.input_format)
        self.assertEqual(["user", "assistant", "user", "assistant"], [turn.role for turn in session.history])


class SessionManagerTests(unittest.TestCase):
    def test_handles_are_explicit(self) -> None:
        client = _FakeClient([_json("S1", 1, 0.01)])
        manager = SessionManager(client)

        fresh = manager.create()
        resumed = manager.resume("S7")
        continuing = manager.continue_last()

        self.assertEqual(NEW, fresh.state)
        self.assertEqual(RESUMED, resumed.state)
        self.assertEqual(CONTINUING, continuing.state)
        self.assertEqual("json", fresh.options.output_format)
        self.assertEqual(["S7"], manager.list())

        asyncio.run(fresh.send("hi"))
        self.assertIs(fresh, manager.get("S1"))
        self.assertEqual(["S1", "S7"], manager.list())

        self.assertTrue(manager.delete("S7"))
        self.assertFalse(manager.delete("S7"))
        self.assertIsNone(manager.get("S7"))

        manager.clear()
        self.assertEqual([], manager.list())

    def test_resume_requires_an_id(self) -> None:
        with self.assertRaises(ClaudeSessionError):
            SessionManager(_FakeClient()).resume("")

    def test_imported_metadata_survives_export(self) -> None:
        session = SessionManager(_FakeClient()).create()
        session.import_data(SessionData(metadata=SessionMetadata(id="S1", created_at="t0", last_active="t1", turns=2)))
        self.assertEqual("S1", session.export().metadata.id)


if __name__ == "__main__":
    unittest.main()
