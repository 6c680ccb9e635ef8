"""Stream-json line parser for agent CLI output.

Every line becomes exactly one `StreamMessage`. Lines that are not JSON
objects degrade to a system message wrapping the raw text, so the parser
never raises.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from agent_runner.common import parse_iso
from agent_runner.execution.models import (
    ContentBlock,
    MessageKind,
    PayloadSegment,
    StreamMessage,
)

logger = logging.getLogger(__name__)

NO_CONTENT = "(no content)"

_LINE_NUMBER_ARROW = re.compile(r"^\s*\d+→")


@dataclass(frozen=True, slots=True)
class TokenUsageStrategy:
    """Read one numeric usage field from one nested location of a message."""

    location: tuple[str, ...]
    field: str

    def extract(self, payload: dict[str, Any]) -> int | None:
        node: Any = payload
        for key in self.location:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        if not isinstance(node, dict):
            return None
        value = node.get(self.field)
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return int(value)


_USAGE_LOCATIONS: tuple[tuple[str, ...], ...] = (
    ("usage",),
    ("message", "usage"),
    ("metadata", "tokenUsage"),
    ("metadata", "token_usage"),
)
_USAGE_FIELDS: tuple[str, ...] = (
    "output_tokens",
    "total_tokens",
    "tokens",
    "outputTokens",
    "totalTokens",
)

TOKEN_USAGE_STRATEGIES: tuple[TokenUsageStrategy, ...] = tuple(
    TokenUsageStrategy(location=location, field=field_name)
    for location in _USAGE_LOCATIONS
    for field_name in _USAGE_FIELDS
)


def extract_token_usage(
    payload: dict[str, Any],
    strategies: Iterable[TokenUsageStrategy] = TOKEN_USAGE_STRATEGIES,
) -> int | None:
    """Return the first usage figure found by the ordered strategies."""

    for strategy in strategies:
        value = strategy.extract(payload)
        if value is not None:
            return value
    return None


def parse_line(line: str) -> StreamMessage:
    """Classify one raw output line."""

    text = line.rstrip("\r\n")
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError):
        return system_message(text)
    if not isinstance(payload, dict):
        return system_message(text)
    try:
        return _classify(payload, raw=text)
    except Exception:  # noqa: BLE001
        logger.debug("Unclassifiable stream line, keeping raw text", exc_info=True)
        return system_message(text)


def system_message(text: str) -> StreamMessage:
    """System message wrapping free text (used for non-JSON output)."""

    data = {"type": MessageKind.SYSTEM.value, "content": [{"type": "text", "text": text}]}
    return StreamMessage(
        kind=MessageKind.SYSTEM,
        data=data,
        raw=text,
        segments=_finalize([_segment(text)]),
        blocks=[ContentBlock(type="text", text=text)],
    )


def error_message(text: str) -> StreamMessage:
    """Error message for stderr output and engine-side failures."""

    data = {"type": MessageKind.ERROR.value, "error": text}
    return StreamMessage(
        kind=MessageKind.ERROR,
        data=data,
        raw=json.dumps(data, ensure_ascii=False),
        segments=_finalize([_segment(text)]),
        error=text,
    )


def _classify(payload: dict[str, Any], *, raw: str) -> StreamMessage:
    try:
        kind = MessageKind(payload.get("type"))
    except ValueError:
        kind = None

    subtype = payload.get("subtype") if isinstance(payload.get("subtype"), str) else None
    timestamp = parse_iso(payload.get("timestamp"))
    tokens = extract_token_usage(payload)
    blocks: list[ContentBlock] = []
    result: str | None = None
    error: str | None = None

    if kind in (MessageKind.ASSISTANT, MessageKind.USER):
        message = payload.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        blocks = _content_blocks(content)
        segments = _conversation_segments(blocks)
    elif kind is MessageKind.SYSTEM:
        blocks = _content_blocks(payload.get("content"))
        segments = _system_segments(payload, blocks)
    elif kind is MessageKind.RESULT:
        result, segments = _result_segments(payload.get("result"))
    elif kind is MessageKind.ERROR:
        error = _error_text(payload)
        segments = [_segment(error)]
    else:
        kind = MessageKind.SYSTEM
        segments = [_segment(json.dumps(payload, indent=2, ensure_ascii=False), is_code=True)]

    return StreamMessage(
        kind=kind,
        data=payload,
        raw=raw,
        segments=_finalize(segments),
        blocks=blocks,
        subtype=subtype,
        result=result,
        error=error,
        tokens=tokens,
        timestamp=timestamp,
    )


def _content_blocks(content: Any) -> list[ContentBlock]:
    if isinstance(content, str):
        return [ContentBlock(type="text", text=content)]
    if not isinstance(content, list):
        return []

    blocks: list[ContentBlock] = []
    for item in content:
        if isinstance(item, str):
            blocks.append(ContentBlock(type="text", text=item))
            continue
        if not isinstance(item, dict):
            blocks.append(ContentBlock(type="json", content=item))
            continue
        block_type = item.get("type")
        text = item.get("text")
        name = item.get("name")
        blocks.append(
            ContentBlock(
                type=block_type if isinstance(block_type, str) else "text",
                text=text if isinstance(text, str) else None,
                name=name if isinstance(name, str) else None,
                input=item.get("input"),
                content=item.get("content") if "content" in item else item,
            ),
        )
    return blocks


def _conversation_segments(blocks: list[ContentBlock]) -> list[PayloadSegment | None]:
    segments: list[PayloadSegment | None] = []
    for block in blocks:
        if block.type == "text" and block.text:
            trimmed = block.text.strip()
            pretty = _pretty_json(trimmed) if _looks_like_json(trimmed) else None
            segments.append(_segment(pretty or trimmed, is_code=pretty is not None))
        elif block.type == "tool_use":
            segments.append(_segment(f"Tool call → {block.name or 'unknown'}"))
            if block.input is not None:
                segments.append(
                    _segment(json.dumps(block.input, indent=2, ensure_ascii=False), is_code=True),
                )
        elif block.type == "tool_result":
            segments.append(_segment("Tool result"))
            segments.append(_segment(format_tool_result(block.content)))
    return segments


def _system_segments(
    payload: dict[str, Any],
    blocks: list[ContentBlock],
) -> list[PayloadSegment | None]:
    segments: list[PayloadSegment | None] = []
    for block in blocks:
        if block.text is not None:
            segments.append(_segment(block.text))
        else:
            segments.append(
                _segment(json.dumps(block.content, indent=2, ensure_ascii=False), is_code=True),
            )

    tools = payload.get("tools")
    if isinstance(tools, list):
        segments.append(_segment(f"Tools: {len(tools)}"))
    model = payload.get("model")
    if isinstance(model, str):
        segments.append(_segment(f"Model: {model}"))
    servers = payload.get("mcp_servers")
    if isinstance(servers, list) and servers:
        rendered = " | ".join(
            f"{server.get('name')} ({server.get('status')})"
            for server in servers
            if isinstance(server, dict)
        )
        segments.append(_segment(f"MCP Servers: {rendered}"))
    return segments


def _result_segments(value: Any) -> tuple[str | None, list[PayloadSegment | None]]:
    if isinstance(value, str):
        pretty = _pretty_json(value) if _looks_like_json(value) else None
        return value, [_segment(pretty or value, is_code=pretty is not None)]
    if value is None:
        return None, []
    rendered = json.dumps(value, indent=2, ensure_ascii=False)
    return rendered, [_segment(rendered, is_code=True)]


def _error_text(payload: dict[str, Any]) -> str:
    value = payload.get("error")
    if value is None:
        value = payload.get("message")
    if isinstance(value, dict):
        nested = value.get("message")
        if isinstance(nested, str):
            return nested
        return json.dumps(value, ensure_ascii=False)
    if value is None:
        return ""
    return str(value)


def format_tool_result(content: Any) -> str:
    """Normalize tool result content into readable text."""

    if content is None:
        return ""
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, str):
                parts.append(item)
            else:
                parts.append(json.dumps(item, ensure_ascii=False))
        text = "\n".join(parts)
    elif isinstance(content, dict):
        text = json.dumps(content, indent=2, ensure_ascii=False)
    else:
        text = str(content)

    if "\n" not in text and "\\n" in text:
        text = text.replace("\\n", "\n")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_LINE_NUMBER_ARROW.sub("", line.lstrip("\ufeff")) for line in text.split("\n")]
    result = "\n".join(lines)
    result = result.replace('\\"', '"').replace("\\t", "\t")
    return result.strip()


def _looks_like_json(text: str) -> bool:
    trimmed = text.strip()
    if not (
        (trimmed.startswith("{") and trimmed.endswith("}"))
        or (trimmed.startswith("[") and trimmed.endswith("]"))
    ):
        return False
    return _pretty_json(trimmed) is not None


def _pretty_json(text: str) -> str | None:
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return json.dumps(parsed, indent=2, ensure_ascii=False)


def _segment(text: str | None, *, is_code: bool = False) -> PayloadSegment | None:
    if text is None or not text.strip():
        return None
    return PayloadSegment(text=text.strip(), is_code=is_code)


def _finalize(segments: list[PayloadSegment | None]) -> list[PayloadSegment]:
    kept = [segment for segment in segments if segment is not None]
    return kept or [PayloadSegment(text=NO_CONTENT)]
