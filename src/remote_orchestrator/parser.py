"""Tolerant parsing of raw events emitted by the driving process.

The driving process is outside our control, so every function here
degrades to an empty result on malformed input instead of raising.
Only this module looks at untyped payloads; everything downstream works
with TextFragment / ToolInvocation / ToolResult values.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from remote_orchestrator.types import (
    ContentBlock,
    Role,
    TextFragment,
    ToolInvocation,
    ToolResult,
)

logger = logging.getLogger(__name__)

_COST_KEYS = ("total_cost_usd", "totalCostUsd", "cost_usd", "costUsd")


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _text_of(block: Any) -> str | None:
    if (
        isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ):
        return block["text"]
    return None


def _invocation_of(block: Any) -> ToolInvocation | None:
    if not (
        isinstance(block, dict)
        and block.get("type") == "tool_use"
        and isinstance(block.get("id"), str)
        and isinstance(block.get("name"), str)
    ):
        return None
    return ToolInvocation(
        id=block["id"],
        name=block["name"],
        input=block.get("input"),
        has_input="input" in block,
    )


def extract_text(content: Any) -> str:
    """Return the text carried by a message content value.

    A plain string is returned unchanged. For a sequence, the ``text`` of
    every ``{"type": "text"}`` block is joined with newlines, in order;
    anything else yields an empty string.
    """
    if isinstance(content, str):
        return content
    if not _is_sequence(content):
        return ""
    parts = [text for text in map(_text_of, content) if text is not None]
    return "\n".join(parts)


def extract_tool_invocations(content: Any) -> list[ToolInvocation]:
    """Return the well-formed ``tool_use`` blocks of a content sequence.

    Blocks without a string ``id`` or ``name`` are dropped.
    """
    if not _is_sequence(content):
        return []
    return [inv for inv in map(_invocation_of, content) if inv is not None]


def parse_content(content: Any) -> list[ContentBlock]:
    """Project content onto ordered text fragments and tool invocations."""
    if isinstance(content, str):
        return [TextFragment(content)] if content else []
    if not _is_sequence(content):
        return []

    blocks: list[ContentBlock] = []
    for raw in content:
        text = _text_of(raw)
        if text is not None:
            blocks.append(TextFragment(text))
            continue
        invocation = _invocation_of(raw)
        if invocation is not None:
            blocks.append(invocation)
    return blocks


def serialize_blocks(blocks: Iterable[ContentBlock]) -> str:
    """Serialize parsed blocks for storage in a transcript message."""
    return json.dumps([b.to_dict() for b in blocks], ensure_ascii=False, default=str)


def decode_content(content: str) -> Any:
    """Inverse of serialize_blocks; plain text is returned as-is."""
    if not content.startswith("["):
        return content
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return content


def message_text(role: Role | str, content: str) -> str:
    """Readable text of a stored transcript message.

    User messages are stored verbatim; only assistant messages hold
    serialized blocks.
    """
    if role in (Role.USER, Role.USER.value):
        return content
    return extract_text(decode_content(content))


def coerce_cost(value: Any) -> float | None:
    """Return a non-negative cost in USD, or None when the value is not one."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value < 0:  # NaN or negative
        return None
    return float(value)


def _cost_from(source: Any) -> float | None:
    if not isinstance(source, dict):
        return None
    for key in _COST_KEYS:
        cost = coerce_cost(source.get(key))
        if cost is not None:
            return cost
    return None


# ---------------------------------------------------------------------------
# Event-level accessors
# ---------------------------------------------------------------------------


def parse_stream_line(line: str | bytes) -> dict[str, Any] | None:
    """Decode one newline-delimited JSON line; non-objects are ignored."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    text = line.strip()
    if not text:
        return None
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"Ignoring non-JSON line: {text[:120]}")
        return None
    return value if isinstance(value, dict) else None


def event_type(event: Any) -> str:
    if isinstance(event, dict) and isinstance(event.get("type"), str):
        return event["type"]
    return ""


def message_content(event: Any) -> Any:
    """Return ``event.message.content`` or None."""
    if not isinstance(event, dict):
        return None
    message = event.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content")


def extract_tool_results(event: Any) -> list[ToolResult]:
    """Return the tool completion signals carried by a user event.

    Signals come from ``tool_result`` blocks in the message content and
    from a top-level ``tool_use_result`` object that names its
    ``tool_use_id``. A cost reported in ``tool_use_result`` belongs to the
    id it names; without an id it is attached only when the event carries
    exactly one ``tool_result`` block.
    """
    if not isinstance(event, dict):
        return []

    side = event.get("tool_use_result")
    side_cost = _cost_from(side)
    side_id = side.get("tool_use_id") if isinstance(side, dict) else None
    if not isinstance(side_id, str):
        side_id = None

    blocks: list[dict[str, Any]] = []
    content = message_content(event)
    if _is_sequence(content):
        blocks = [
            block
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "tool_result"
            and isinstance(block.get("tool_use_id"), str)
        ]

    results: dict[str, ToolResult] = {}
    for block in blocks:
        tool_use_id = block["tool_use_id"]
        cost = _cost_from(block)
        if cost is None:
            if side_id is not None:
                cost = side_cost if side_id == tool_use_id else None
            elif len(blocks) == 1:
                cost = side_cost
        results[tool_use_id] = ToolResult(
            tool_use_id=tool_use_id,
            is_error=block.get("is_error") is True,
            cost_usd=cost,
        )

    if side_id is not None and side_id not in results:
        results[side_id] = ToolResult(
            tool_use_id=side_id,
            is_error=side.get("is_error") is True,
            cost_usd=side_cost,
        )

    return list(results.values())


def result_cost(event: Any) -> float | None:
    """Cost reported by a ``result`` event."""
    return _cost_from(event)


def result_errors(event: Any) -> list[str]:
    """Error strings reported by a failed ``result`` event."""
    if not isinstance(event, dict):
        return []
    errors = event.get("errors")
    if not _is_sequence(errors):
        return []
    return [str(e) for e in errors if e is not None]
