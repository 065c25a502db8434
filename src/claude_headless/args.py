from __future__ import annotations

from claude_headless.errors import ClaudeConfigError
from claude_headless.models import INPUT_FORMATS, OUTPUT_FORMATS, TEXT, QueryOptions

PRINT_FLAG = "--print"


def validate_options(options: QueryOptions) -> None:
    if options.session_id and options.continue_last:
        raise ClaudeConfigError("session_id (resume) and continue_last are mutually exclusive")
    if options.output_format not in OUTPUT_FORMATS:
        raise ClaudeConfigError(f"Unknown output format: {options.output_format!r}")
    if options.input_format is not None and options.input_format not in INPUT_FORMATS:
        raise ClaudeConfigError(f"Unknown input format: {options.input_format!r}")


def build_args(prompt: str | None, options: QueryOptions) -> list[str]:
    """Build the CLI argument vector for one invocation.

    The result depends only on the inputs, so the same request always yields
    the same vector. The prompt, when given, is the last element.
    """
    validate_options(options)

    args = [PRINT_FLAG]

    if options.output_format != TEXT:
        args.append(f"--output-format={options.output_format}")
    if options.input_format:
        args.append(f"--input-format={options.input_format}")

    if options.session_id:
        args.extend(["--resume", options.session_id])
    elif options.continue_last:
        args.append("--continue")

    if options.allowed_tools:
        args.append(f"--allowedTools={','.join(options.allowed_tools)}")
    if options.disallowed_tools:
        args.append(f"--disallowedTools={','.join(options.disallowed_tools)}")

    if options.mcp_config:
        args.append(f"--mcp-config={options.mcp_config}")
    if options.permission_prompt_tool:
        args.append(f"--permission-prompt-tool={options.permission_prompt_tool}")
    if options.permission_mode:
        args.append(f"--permission-mode={options.permission_mode}")
    if options.append_system_prompt:
        args.append(f"--append-system-prompt={options.append_system_prompt}")

    if options.verbose:
        args.append("--verbose")
    if options.no_interactive:
        args.append("--no-interactive")

    if prompt is not None:
        args.append(prompt)

    return args
