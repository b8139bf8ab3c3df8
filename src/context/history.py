"""
Per-message shrinking used when pruning conversation history.

Tool results become compact JSON summaries, long code fences in
assistant turns are cut to head and tail, oversized user turns are
truncated with a marker.
"""

from __future__ import annotations

import json
import re
from typing import Any

CODE_BLOCK = re.compile(r"```[\s\S]*?```")
FUNCTION_DEF = re.compile(r"^\s*(?:async\s+def|def|func|function|fn)\s+\w+", re.MULTILINE)
CLASS_DEF = re.compile(r"^\s*(?:export\s+)?(?:class|struct|interface|type\s+\w+\s+struct)\b", re.MULTILINE)
IMPORT_LINE = re.compile(r"^[ \t]*(?:import|from\s+\S+\s+import|#include|require\(|use\s).*$", re.MULTILINE)

CODE_TRIM_MARKER = "... [code block trimmed] ..."
USER_TRUNCATION_MARKER = "...[user input truncated]"
RESPONSE_TRUNCATION_MARKER = "...[response truncated]"
CONTENT_TRUNCATION_MARKER = "...[content truncated]"

# Fields kept when summarizing a generic tool result
TOOL_SUMMARY_FIELDS = (
    "success", "status", "exit_code", "filePath", "file_path", "lineCount",
    "totalFound", "found", "entity_count", "tools_executed",
)
PREVIEW_LINES = 8
CONTENT_PREVIEW_CHARS = 200
ERROR_PREVIEW_CHARS = 100
RAW_TOOL_TEXT_LIMIT = 500


def _file_path_of(payload: dict[str, Any]) -> Any:
    return payload.get("filePath", payload.get("file_path"))


def is_file_payload(payload: Any) -> bool:
    return (
        isinstance(payload, dict)
        and isinstance(payload.get("content"), str)
        and _file_path_of(payload) is not None
    )


def summarize_file_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Structural preview of a file read: counts, imports and first lines."""
    content: str = payload["content"]
    lines = content.split("\n")
    summary: dict[str, Any] = {
        "type": "file_content",
        "filePath": _file_path_of(payload),
        "lineCount": len(lines),
        "functions": len(FUNCTION_DEF.findall(content)),
        "classes": len(CLASS_DEF.findall(content)),
        "imports": [m.group(0).strip() for m in IMPORT_LINE.finditer(content)][:5],
        "preview": "\n".join(lines[:PREVIEW_LINES]),
    }
    for key, value in payload.items():
        if key not in ("content", "filePath", "file_path"):
            summary.setdefault(key, value)
    return summary


def summarize_tool_payload(content: str) -> str:
    """
    Shrink a tool result to status, path, count and preview fields.

    Non-JSON results longer than RAW_TOOL_TEXT_LIMIT keep only a prefix.
    """
    try:
        payload = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        if len(content) > RAW_TOOL_TEXT_LIMIT:
            return content[:CONTENT_PREVIEW_CHARS] + CONTENT_TRUNCATION_MARKER
        return content

    if not isinstance(payload, dict):
        return content if len(content) <= RAW_TOOL_TEXT_LIMIT else content[:CONTENT_PREVIEW_CHARS] + CONTENT_TRUNCATION_MARKER

    if is_file_payload(payload):
        return json.dumps(summarize_file_payload(payload))

    summary: dict[str, Any] = {key: payload[key] for key in TOOL_SUMMARY_FIELDS if key in payload}

    error = payload.get("error")
    if isinstance(error, str) and len(error) > ERROR_PREVIEW_CHARS:
        summary["error"] = error[:ERROR_PREVIEW_CHARS] + "..."
    elif error is not None:
        summary["error"] = error

    body = payload.get("content")
    if isinstance(body, str) and len(body) > CONTENT_PREVIEW_CHARS:
        summary["content_preview"] = body[:CONTENT_PREVIEW_CHARS] + CONTENT_TRUNCATION_MARKER
    elif body is not None:
        summary["content"] = body

    if not summary:
        # Nothing recognisable; keep the payload if it is small
        if len(content) <= RAW_TOOL_TEXT_LIMIT:
            return content
        summary["content_preview"] = content[:CONTENT_PREVIEW_CHARS] + CONTENT_TRUNCATION_MARKER
    return json.dumps(summary)


def _trim_block(block: str, max_chars: int, max_lines: int) -> str:
    lines = block.split("\n")
    if len(block) <= max_chars or len(lines) <= max_lines:
        return block
    # Fence lines stay so the block remains well formed
    head = lines[:5]
    tail = lines[-3:]
    return "\n".join(head + [CODE_TRIM_MARKER] + tail)


def trim_code_blocks(text: str, max_block_chars: int = 500, max_block_lines: int = 10) -> str:
    """Cut fenced code blocks longer than the limits down to head and tail."""
    return CODE_BLOCK.sub(lambda m: _trim_block(m.group(0), max_block_chars, max_block_lines), text)


def truncate_text(text: str, max_chars: int, marker: str) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker


__all__ = [
    "summarize_tool_payload",
    "summarize_file_payload",
    "is_file_payload",
    "trim_code_blocks",
    "truncate_text",
    "CODE_TRIM_MARKER",
    "USER_TRUNCATION_MARKER",
    "RESPONSE_TRUNCATION_MARKER",
]
