"""Typed view of the worker's ``--output-format stream-json`` output.

Every stdout line becomes exactly one event. Lines that are not JSON objects
are kept as :class:`RawTextEvent` so nothing the worker prints is lost.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

ACTIVITY_ARG_KEYS = ("file_path", "command", "pattern", "query")
ACTIVITY_ARG_LIMIT = 60


@dataclass(slots=True)
class TextBlock:
    text: str


@dataclass(slots=True)
class ToolUseBlock:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(slots=True)
class PermissionDenial:
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)

    @property
    def command(self) -> str:
        """Human-readable form of the denied call, e.g. ``npm install``."""
        return salient_argument(self.tool_input) or self.tool_name

    @property
    def allow_rule(self) -> str:
        """``--allowedTools`` entry permitting exactly this call."""
        arg = self.tool_input.get("command") or self.tool_input.get("file_path")
        if isinstance(arg, str) and arg:
            return f"{self.tool_name}({arg})"
        return self.tool_name


@dataclass(slots=True)
class AssistantEvent:
    blocks: list[ContentBlock] = field(default_factory=list)


@dataclass(slots=True)
class ResultEvent:
    result: str
    is_error: bool = False
    permission_denials: list[PermissionDenial] = field(default_factory=list)


@dataclass(slots=True)
class SystemEvent:
    subtype: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UnknownEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RawTextEvent:
    text: str


StreamEvent = Union[AssistantEvent, ResultEvent, SystemEvent, UnknownEvent, RawTextEvent]


def _parse_blocks(message: Any) -> list[ContentBlock]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [TextBlock(text=content)]
    blocks: list[ContentBlock] = []
    for item in content or []:
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind == "text":
            blocks.append(TextBlock(text=str(item.get("text", ""))))
        elif kind == "tool_use":
            tool_input = item.get("input")
            blocks.append(
                ToolUseBlock(
                    name=str(item.get("name", "tool")),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
    return blocks


def _parse_denials(raw: Any) -> list[PermissionDenial]:
    denials = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        tool_input = item.get("tool_input")
        denials.append(
            PermissionDenial(
                tool_name=str(item.get("tool_name", "tool")),
                tool_input=tool_input if isinstance(tool_input, dict) else {},
            )
        )
    return denials


def parse_stream_line(line: str) -> StreamEvent | None:
    """Parse one stdout line. Blank lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return RawTextEvent(text=line.rstrip("\n"))
    if not isinstance(data, dict):
        return RawTextEvent(text=line.rstrip("\n"))

    kind = str(data.get("type", ""))
    if kind == "assistant":
        return AssistantEvent(blocks=_parse_blocks(data.get("message")))
    if kind == "result":
        result = data.get("result")
        return ResultEvent(
            result=result if isinstance(result, str) else "",
            is_error=bool(data.get("is_error", False)),
            permission_denials=_parse_denials(data.get("permission_denials")),
        )
    if kind == "system":
        return SystemEvent(subtype=str(data.get("subtype", "")), payload=data)
    return UnknownEvent(type=kind, payload=data)


def salient_argument(tool_input: dict[str, Any]) -> str:
    for key in ACTIVITY_ARG_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def format_tool_activity(block: ToolUseBlock, limit: int = ACTIVITY_ARG_LIMIT) -> str:
    """Short status line for a tool call, e.g. ``Read: src/app.py``."""
    arg = " ".join(salient_argument(block.input).split())
    if not arg:
        return block.name
    if len(arg) > limit:
        arg = arg[: limit - 3] + "..."
    return f"{block.name}: {arg}"
