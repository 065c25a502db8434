import json
import unittest

from claude_headless.errors import ClaudeAPIError, ClaudeConfigError, ClaudeParseError, ClaudeProcessError
from claude_headless.models import JsonResponse, ProcessResult, StreamJsonResponse, TextResponse
from claude_headless.reconcile import reconcile


def _json_payload(**overrides) -> str:
    payload = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "duration_ms": 120,
        "duration_api_ms": 100,
        "num_turns": 2,
        "result": "done",
        "session_id": "S1",
        "total_cost_usd": 0.02,
    }
    payload.update(overrides)
    return json.dumps(payload)


class TextModeTests(unittest.TestCase):
    def test_stdout_is_returned_verbatim(self) -> None:
        response = reconcile(ProcessResult(stdout="4\n", stderr="", exit_code=0), "text")
        self.assertEqual(TextResponse(text="4\n", exit_code=0), response)

    def test_nonzero_exit_is_process_error(self) -> None:
        with self.assertRaises(ClaudeProcessError) as ctx:
            reconcile(ProcessResult(stdout="", stderr="not logged in", exit_code=1), "text")
        self.assertEqual(1, ctx.exception.exit_code)
        self.assertEqual("not logged in", ctx.exception.stderr)


class JsonModeTests(unittest.TestCase):
    def test_success_payload(self) -> None:
        response = reconcile(ProcessResult(stdout=_json_payload(), stderr="", exit_code=0), "json")
        self.assertIsInstance(response, JsonResponse)
        self.assertEqual("S1", response.session_id)
        self.assertEqual(2, response.num_turns)
        self.assertEqual(0.02, response.total_cost_usd)

    def test_error_flag_with_clean_exit_is_api_error(self) -> None:
        stdout = json.dumps({"isError": True, "result": "disk full", "session_id": "S1"})
        with self.assertRaises(ClaudeAPIError) as ctx:
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "json")
        self.assertEqual("disk full", ctx.exception.message)
        self.assertEqual("S1", ctx.exception.response["session_id"])

    def test_error_flag_wins_over_nonzero_exit(self) -> None:
        stdout = _json_payload(is_error=True, result="rate limited")
        with self.assertRaises(ClaudeAPIError) as ctx:
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=1), "json")
        self.assertEqual(1, ctx.exception.exit_code)

    def test_success_payload_wins_over_nonzero_exit(self) -> None:
        response = reconcile(ProcessResult(stdout=_json_payload(), stderr="warn", exit_code=1), "json")
        self.assertEqual("done", response.result)
        self.assertEqual(1, response.exit_code)

    def test_garbage_with_zero_exit_is_parse_error(self) -> None:
        with self.assertRaises(ClaudeParseError):
            reconcile(ProcessResult(stdout="oops", stderr="", exit_code=0), "json")

    def test_garbage_with_nonzero_exit_is_process_error(self) -> None:
        with self.assertRaises(ClaudeProcessError):
            reconcile(ProcessResult(stdout="", stderr="crash", exit_code=3), "json")

    def test_non_object_document_is_parse_error(self) -> None:
        with self.assertRaises(ClaudeParseError):
            reconcile(ProcessResult(stdout="[1, 2]", stderr="", exit_code=0), "json")

    def test_wrongly_typed_payload_is_parse_error(self) -> None:
        for stdout in (_json_payload(num_turns="abc"), _json_payload(total_cost_usd=[0.1])):
            with self.subTest(stdout=stdout):
                with self.assertRaises(ClaudeParseError) as ctx:
                    reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "json")
                self.assertEqual(stdout, ctx.exception.raw_data)

    def test_wrongly_typed_payload_with_nonzero_exit_is_process_error(self) -> None:
        with self.assertRaises(ClaudeProcessError) as ctx:
            reconcile(ProcessResult(stdout=_json_payload(num_turns="abc"), stderr="boom", exit_code=2), "json")
        self.assertEqual(2, ctx.exception.exit_code)

    def test_error_payload_keeps_raw_response(self) -> None:
        stdout = _json_payload(is_error=True, result="quota exceeded")
        with self.assertRaises(ClaudeAPIError) as ctx:
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "json")
        self.assertEqual("quota exceeded", ctx.exception.message)
        self.assertEqual(json.loads(stdout), ctx.exception.response)


class UnknownFormatTests(unittest.TestCase):
    def test_unknown_format_is_config_error(self) -> None:
        with self.assertRaises(ClaudeConfigError):
            reconcile(ProcessResult(stdout="", stderr="", exit_code=0), "yaml")


class StreamJsonModeTests(unittest.TestCase):
    def _stream(self, *lines: str) -> str:
        return "\n".join(lines) + "\n"

    def test_scenario_with_init_chunks_and_result(self) -> None:
        stdout = self._stream(
            '{"type":"init","session_id":"S2"}',
            '{"type":"assistant","message":{"content":[{"type":"text","text":"a"}]}}',
            '{"type":"assistant","message":{"content":[{"type":"text","text":"b"}]}}',
            _json_payload(session_id="S2", result="ab"),
        )
        response = reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "stream-json")
        self.assertIsInstance(response, StreamJsonResponse)
        self.assertEqual(4, len(response.messages))
        self.assertEqual("S2", response.final.session_id)

    def test_no_terminal_message_is_parse_error(self) -> None:
        stdout = self._stream('{"type":"init","session_id":"S2"}')
        with self.assertRaises(ClaudeParseError):
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "stream-json")

    def test_no_terminal_with_nonzero_exit_is_process_error(self) -> None:
        stdout = self._stream('{"type":"init","session_id":"S2"}')
        with self.assertRaises(ClaudeProcessError):
            reconcile(ProcessResult(stdout=stdout, stderr="killed", exit_code=137), "stream-json")

    def test_error_terminal_is_api_error(self) -> None:
        stdout = self._stream('{"type":"init"}', '{"type":"error","error":"overloaded"}')
        with self.assertRaises(ClaudeAPIError) as ctx:
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "stream-json")
        self.assertEqual("overloaded", ctx.exception.message)

    def test_failed_result_is_api_error(self) -> None:
        stdout = self._stream(_json_payload(is_error=True, result="disk full"))
        with self.assertRaises(ClaudeAPIError):
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "stream-json")

    def test_malformed_line_is_parse_error(self) -> None:
        stdout = self._stream('{"type":"init"}', "{broken", _json_payload())
        with self.assertRaises(ClaudeParseError) as ctx:
            reconcile(ProcessResult(stdout=stdout, stderr="", exit_code=0), "stream-json")
        self.assertEqual("{broken", ctx.exception.raw_data)


if __name__ == "__main__":
    unittest.main()
