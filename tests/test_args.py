import unittest

from claude_headless.args import build_args
from claude_headless.errors import ClaudeConfigError
from claude_headless.models import QueryOptions


class BuildArgsTests(unittest.TestCase):
    def test_text_mode_is_minimal(self) -> None:
        self.assertEqual(["--print", "2+2"], build_args("2+2", QueryOptions()))

    def test_full_request_order(self) -> None:
        options = QueryOptions(
            output_format="stream-json",
            input_format="stream-json",
            allowed_tools=("Read", "Grep"),
            disallowed_tools=("Bash",),
            mcp_config="/tmp/mcp.json",
            permission_prompt_tool="mcp__auth__prompt",
            permission_mode="acceptEdits",
            append_system_prompt="Be brief.",
            verbose=True,
            no_interactive=True,
            session_id="S1",
        )

        args = build_args("hello", options)

        self.assertEqual(
            [
                "--print",
                "--output-format=stream-json",
                "--input-format=stream-json",
                "--resume",
                "S1",
                "--allowedTools=Read,Grep",
                "--disallowedTools=Bash",
                "--mcp-config=/tmp/mcp.json",
                "--permission-prompt-tool=mcp__auth__prompt",
                "--permission-mode=acceptEdits",
                "--append-system-prompt=Be brief.",
                "--verbose",
                "--no-interactive",
                "hello",
            ],
            args,
        )

    def test_identical_requests_yield_identical_vectors(self) -> None:
        options = QueryOptions(output_format="json", allowed_tools=("Read",), session_id="abc")
        self.assertEqual(build_args("x", options), build_args("x", QueryOptions(**vars(options))))

    def test_resume_and_continue_are_rejected(self) -> None:
        with self.assertRaises(ClaudeConfigError):
            build_args("x", QueryOptions(session_id="S1", continue_last=True))

    def test_continue_flag(self) -> None:
        self.assertEqual(["--print", "--continue", "next"], build_args("next", QueryOptions(continue_last=True)))

    def test_resume_id_follows_flag_and_prompt_stays_last(self) -> None:
        args = build_args("follow up", QueryOptions(output_format="json", session_id="S1"))
        index = args.index("--resume")
        self.assertEqual("S1", args[index + 1])
        self.assertEqual("follow up", args[-1])

    def test_null_prompt_is_omitted(self) -> None:
        self.assertEqual(["--print", "--input-format=stream-json"], build_args(None, QueryOptions(input_format="stream-json")))

    def test_empty_tool_lists_are_omitted(self) -> None:
        args = build_args("x", QueryOptions(allowed_tools=(), disallowed_tools=()))
        self.assertFalse(any(arg.startswith("--allowedTools") for arg in args))
        self.assertFalse(any(arg.startswith("--disallowedTools") for arg in args))

    def test_unknown_output_format_is_rejected(self) -> None:
        with self.assertRaises(ClaudeConfigError):
            build_args("x", QueryOptions(output_format="yaml"))

    def test_merged_overrides_ignore_none(self) -> None:
        base = QueryOptions(output_format="json", timeout=5.0)
        merged = base.merged(timeout=None, allowed_tools=["Read"])
        self.assertEqual(5.0, merged.timeout)
        self.assertEqual(("Read",), merged.allowed_tools)


if __name__ == "__main__":
    unittest.main()
