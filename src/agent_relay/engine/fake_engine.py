"""Deterministic local engine for integration tests and smoke runs.

Speaks the same line-delimited JSON stream as the real engine CLI. The prompt
is read from stdin; bracketed directives inside it select a scenario:

``[slow]``        emit init, then block until interrupted (exit 130)
``[rate-limit]``  report a usage-limit error result and exit 1
``[tool:NAME]``   request one tool invocation before answering
``[crash]``       write to stderr and exit 3 without any output
``[garbage]``     interleave undecodable lines with the normal stream
``[no-result]``   exit 0 without a result record
"""

from __future__ import annotations

import argparse
import json
import re
import sys
import time
import uuid
from typing import Any

_TOOL_DIRECTIVE = re.compile(r"\[tool:([A-Za-z_]+)\]")


def _emit(record: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("-p", action="store_true")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--permission-mode", default="default")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--allowedTools", nargs="*", default=[])
    parser.add_argument("--model", default="fake-model")
    parser.add_argument("--max-budget-usd", type=float, default=0.0)
    parser.add_argument("--resume", default=None)
    parser.add_argument("--resume-session-at", default=None)
    parser.add_argument("--continue", dest="continue_latest", action="store_true")
    parser.add_argument("--mcp-config", default=None)
    parser.add_argument("--append-system-prompt", default=None)
    args, _unknown = parser.parse_known_args(argv)
    return args


def main(argv: list[str] | None = None) -> int:
    """Replay one scripted engine turn."""

    args = _parse_args(argv)
    prompt = sys.stdin.read()
    session_id = args.resume or str(uuid.uuid4())
    permission_mode = (
        "bypassPermissions" if args.dangerously_skip_permissions else args.permission_mode
    )

    if "[crash]" in prompt:
        sys.stderr.write("fake engine crashed\n")
        sys.stderr.flush()
        return 3

    _emit(
        {
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "model": args.model,
            "tools": ["Bash", "Edit", "Read", "Write", "ExitPlanMode"],
            "permissionMode": permission_mode,
            "uuid": str(uuid.uuid4()),
        },
    )

    if "[garbage]" in prompt:
        sys.stdout.write("this is not json\n")
        sys.stdout.write("[1, 2, 3]\n")
        sys.stdout.flush()

    if "[slow]" in prompt:
        try:
            time.sleep(30)
        except KeyboardInterrupt:
            return 130

    if "[rate-limit]" in prompt:
        _emit(
            {
                "type": "result",
                "subtype": "success",
                "is_error": True,
                "session_id": session_id,
                "result": "Claude AI usage limit reached ∙ resets 2am (UTC)",
                "total_cost_usd": 0.0,
                "duration_ms": 5,
            },
        )
        return 1

    tool_match = _TOOL_DIRECTIVE.search(prompt)
    if tool_match:
        _emit_tool_use(session_id, tool_match.group(1))

    reply = f"echo: {prompt.strip()}"
    _emit(
        {
            "type": "stream_event",
            "session_id": session_id,
            "event": {
                "type": "content_block_delta",
                "index": 0,
                "delta": {"type": "text_delta", "text": reply},
            },
        },
    )
    _emit(
        {
            "type": "assistant",
            "uuid": str(uuid.uuid4()),
            "session_id": session_id,
            "message": {"content": [{"type": "text", "text": reply}]},
        },
    )
    if "[no-result]" in prompt:
        return 0
    _emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "session_id": session_id,
            "result": reply,
            "total_cost_usd": 0.0012,
            "duration_ms": 12,
        },
    )
    return 0


def _emit_tool_use(session_id: str, tool_name: str) -> None:
    tool_use_id = f"toolu_{uuid.uuid4().hex[:12]}"
    tool_input: dict[str, Any]
    if tool_name == "ExitPlanMode":
        tool_input = {"plan": "1. Read the code\n2. Change it"}
    else:
        tool_input = {"command": "echo hi"}
    _emit(
        {
            "type": "stream_event",
            "session_id": session_id,
            "event": {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": tool_use_id, "name": tool_name},
            },
        },
    )
    _emit(
        {
            "type": "stream_event",
            "session_id": session_id,
            "event": {"type": "content_block_stop", "index": 1},
        },
    )
    _emit(
        {
            "type": "assistant",
            "uuid": str(uuid.uuid4()),
            "session_id": session_id,
            "message": {
                "content": [
                    {"type": "tool_use", "id": tool_use_id, "name": tool_name, "input": tool_input},
                ],
            },
        },
    )
    _emit(
        {
            "type": "user",
            "uuid": str(uuid.uuid4()),
            "session_id": session_id,
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": tool_use_id, "content": "hi"},
                ],
            },
        },
    )


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
