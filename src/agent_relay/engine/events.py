"""Typed events decoded from the engine's line-delimited JSON stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


RESULT_ORIGIN_ENGINE = "engine"
RESULT_ORIGIN_EXIT_CODE = "exit_code"
RESULT_ORIGIN_SPAWN = "spawn"
RESULT_ORIGIN_IO = "io"
RESULT_ORIGIN_MISSING = "missing_result"


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """One tool call requested by the engine (name + structured input)."""

    tool_use_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PermissionDenial:
    """Tool call the engine refused because of the permission level."""

    tool_name: str
    tool_use_id: str
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InitEvent:
    session_id: str
    model: str
    tools: tuple[str, ...]
    permission_mode: str
    uuid: str
    kind: str = "init"


@dataclass(frozen=True, slots=True)
class ContentFragmentEvent:
    """Incremental text or partial tool-input JSON."""

    index: int
    text: str
    is_tool_input: bool
    kind: str = "content_fragment"


@dataclass(frozen=True, slots=True)
class ToolInvocationStartEvent:
    index: int
    tool_use_id: str
    name: str
    kind: str = "tool_invocation_start"


@dataclass(frozen=True, slots=True)
class ToolInvocationStopEvent:
    index: int
    tool_use_id: str
    name: str
    kind: str = "tool_invocation_stop"


@dataclass(frozen=True, slots=True)
class AssistantMessageEvent:
    """Completed assistant reply; ``uuid`` is the resume marker."""

    uuid: str
    session_id: str
    text: str
    tool_invocations: tuple[ToolInvocation, ...]
    kind: str = "assistant_message"


@dataclass(frozen=True, slots=True)
class UserEchoEvent:
    uuid: str
    session_id: str
    content: tuple[dict[str, Any], ...]
    interrupted: bool
    kind: str = "user_echo"


@dataclass(frozen=True, slots=True)
class RateLimitSignalEvent:
    """Out-of-band quota notice; ``resets_at`` is a unix timestamp."""

    status: str
    resets_at: float | None
    rate_limit_type: str
    overage_status: str
    kind: str = "rate_limit_signal"

    @property
    def is_rejected(self) -> bool:
        return self.status == "rejected"


@dataclass(frozen=True, slots=True)
class ResultEvent:
    """Terminal record; exactly one per process lifetime."""

    subtype: str
    is_error: bool
    session_id: str = ""
    result: str = ""
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    permission_denials: tuple[PermissionDenial, ...] = ()
    origin: str = RESULT_ORIGIN_ENGINE
    exit_code: int | None = None
    kind: str = "result"


@dataclass(frozen=True, slots=True)
class OtherEvent:
    """Record type the relay does not interpret."""

    type: str
    payload: dict[str, Any]
    kind: str = "other"


StreamEvent = (
    InitEvent
    | ContentFragmentEvent
    | ToolInvocationStartEvent
    | ToolInvocationStopEvent
    | AssistantMessageEvent
    | UserEchoEvent
    | RateLimitSignalEvent
    | ResultEvent
    | OtherEvent
)


def synthesize_error_result(
    message: str,
    *,
    origin: str,
    exit_code: int | None = None,
) -> ResultEvent:
    """Build the terminal error event used when the engine cannot report one."""

    return ResultEvent(
        subtype="error",
        is_error=True,
        result=message,
        origin=origin,
        exit_code=exit_code,
    )


class EventDecoder:
    """Map decoded engine records onto typed events.

    Each record is interpreted on its own; the only carried state is the set
    of open tool blocks, so ``content_block_stop`` can be reported as the end
    of a tool invocation.
    """

    def __init__(self) -> None:
        self._open_tool_blocks: dict[int, tuple[str, str]] = {}

    def decode(self, record: dict[str, Any]) -> StreamEvent | None:
        record_type = str(record.get("type") or "")
        if record_type == "system":
            if record.get("subtype") == "init":
                return InitEvent(
                    session_id=str(record.get("session_id") or ""),
                    model=str(record.get("model") or ""),
                    tools=tuple(str(tool) for tool in record.get("tools") or ()),
                    permission_mode=str(record.get("permissionMode") or ""),
                    uuid=str(record.get("uuid") or ""),
                )
            return OtherEvent(type=f"system:{record.get('subtype') or ''}", payload=record)
        if record_type == "stream_event":
            return self._decode_stream_event(record.get("event") or {})
        if record_type == "assistant":
            return _decode_assistant(record)
        if record_type == "user":
            message = record.get("message") or {}
            content = message.get("content")
            tool_result = record.get("tool_use_result")
            return UserEchoEvent(
                uuid=str(record.get("uuid") or ""),
                session_id=str(record.get("session_id") or ""),
                content=tuple(part for part in content if isinstance(part, dict))
                if isinstance(content, list)
                else (),
                interrupted=bool(tool_result.get("interrupted"))
                if isinstance(tool_result, dict)
                else False,
            )
        if record_type == "rate_limit_event":
            info = record.get("rate_limit_info") or {}
            resets_at = info.get("resetsAt")
            return RateLimitSignalEvent(
                status=str(info.get("status") or ""),
                resets_at=float(resets_at) if isinstance(resets_at, int | float) else None,
                rate_limit_type=str(info.get("rateLimitType") or ""),
                overage_status=str(info.get("overageStatus") or ""),
            )
        if record_type == "result":
            return _decode_result(record)
        return OtherEvent(type=record_type, payload=record)

    def _decode_stream_event(self, event: dict[str, Any]) -> StreamEvent | None:
        event_type = event.get("type")
        index = int(event.get("index") or 0)
        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") in {"tool_use", "server_tool_use"}:
                tool_use_id = str(block.get("id") or "")
                name = str(block.get("name") or "")
                self._open_tool_blocks[index] = (tool_use_id, name)
                return ToolInvocationStartEvent(index=index, tool_use_id=tool_use_id, name=name)
            return None
        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "input_json_delta":
                return ContentFragmentEvent(
                    index=index,
                    text=str(delta.get("partial_json") or ""),
                    is_tool_input=True,
                )
            if "text" in delta:
                return ContentFragmentEvent(
                    index=index,
                    text=str(delta.get("text") or ""),
                    is_tool_input=False,
                )
            return None
        if event_type == "content_block_stop":
            opened = self._open_tool_blocks.pop(index, None)
            if opened is None:
                return None
            return ToolInvocationStopEvent(index=index, tool_use_id=opened[0], name=opened[1])
        # message_start / message_delta / message_stop carry nothing the relay uses.
        return None


def _decode_assistant(record: dict[str, Any]) -> AssistantMessageEvent:
    message = record.get("message") or {}
    texts: list[str] = []
    invocations: list[ToolInvocation] = []
    for part in message.get("content") or ():
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text" and part.get("text"):
            texts.append(str(part["text"]))
        elif part.get("type") == "tool_use":
            tool_input = part.get("input")
            invocations.append(
                ToolInvocation(
                    tool_use_id=str(part.get("id") or ""),
                    name=str(part.get("name") or ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                ),
            )
    return AssistantMessageEvent(
        uuid=str(record.get("uuid") or ""),
        session_id=str(record.get("session_id") or ""),
        text="\n".join(texts),
        tool_invocations=tuple(invocations),
    )


def _decode_result(record: dict[str, Any]) -> ResultEvent:
    denials: list[PermissionDenial] = []
    for item in record.get("permission_denials") or ():
        if not isinstance(item, dict):
            continue
        tool_input = item.get("tool_input")
        denials.append(
            PermissionDenial(
                tool_name=str(item.get("tool_name") or ""),
                tool_use_id=str(item.get("tool_use_id") or ""),
                tool_input=tool_input if isinstance(tool_input, dict) else {},
            ),
        )
    subtype = str(record.get("subtype") or "")
    return ResultEvent(
        subtype=subtype,
        is_error=bool(record.get("is_error")) or subtype != "success",
        session_id=str(record.get("session_id") or ""),
        result=str(record.get("result") or ""),
        total_cost_usd=float(record.get("total_cost_usd") or 0.0),
        duration_ms=int(record.get("duration_ms") or 0),
        permission_denials=tuple(denials),
    )
