import os
import unittest
from unittest.mock import patch

from claude_headless.app_config import (
    CLI_ENV_VAR,
    DB_ENV_VAR,
    load_json_config,
    parse_app_config,
    resolve_runtime_env,
)
from claude_headless.errors import ClaudeConfigError
from tests.artifacts import ArtifactDirTestCase


class ParseAppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})
        self.assertEqual("claude", app.cli_path)
        self.assertEqual("text", app.output_format)
        self.assertEqual(120.0, app.timeout_seconds)
        self.assertEqual([], app.allowed_tools)
        self.assertEqual(200, app.max_sessions)
        self.assertEqual(30, app.retention_days)
        self.assertEqual(1, app.retry_attempts)
        self.assertFalse(app.verbose)
        self.assertEqual("INFO", app.log_level)

    def test_values_are_normalised(self) -> None:
        app = parse_app_config(
            {
                "OutputFormat": "Stream-JSON",
                "AllowedTools": "Read, Grep,,",
                "DisallowedTools": ["Bash"],
                "PermissionMode": "  ",
                "RetryAttempts": 0,
                "LogLevel": "debug",
                "TimeoutSeconds": "2.5",
            }
        )
        self.assertEqual("stream-json", app.output_format)
        self.assertTrue(app.verbose)
        self.assertEqual(["Read", "Grep"], app.allowed_tools)
        self.assertEqual(["Bash"], app.disallowed_tools)
        self.assertIsNone(app.permission_mode)
        self.assertEqual(1, app.retry_attempts)
        self.assertEqual("DEBUG", app.log_level)
        self.assertEqual(2.5, app.timeout_seconds)

    def test_verbose_flag_accepts_strings(self) -> None:
        self.assertTrue(parse_app_config({"Verbose": "yes"}).verbose)
        self.assertFalse(parse_app_config({"OutputFormat": "stream-json", "Verbose": "off"}).verbose)

    def test_unknown_output_format_is_rejected(self) -> None:
        with self.assertRaises(ClaudeConfigError):
            parse_app_config({"OutputFormat": "xml"})

    def test_runtime_env(self) -> None:
        with patch.dict(os.environ, {CLI_ENV_VAR: "/opt/claude", DB_ENV_VAR: ""}):
            env = resolve_runtime_env()
        self.assertEqual("/opt/claude", env.cli_path)
        self.assertIsNone(env.session_db_path)


class LoadJsonConfigTests(ArtifactDirTestCase):
    def test_missing_file_is_empty(self) -> None:
        self.assertEqual({}, load_json_config(self._tmp_dir / "config.json"))

    def test_reads_file(self) -> None:
        path = self._tmp_dir / "config.json"
        path.write_text('{"AgentName": "ops"}', encoding="utf-8")
        self.assertEqual("ops", parse_app_config(load_json_config(path)).agent_name)

    def test_invalid_json_raises(self) -> None:
        path = self._tmp_dir / "config.json"
        path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(ClaudeConfigError):
            load_json_config(path)
