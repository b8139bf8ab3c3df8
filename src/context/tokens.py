"""Rough token estimation with code awareness."""

from __future__ import annotations

import math
import re

from ..types import ChatMessage

CODE_FENCE = "```"
# Declaration keywords only count at the start of a line
CODE_LINE_START = re.compile(
    r"^[ \t]*(?:def|class|import|from\s+\S+\s+import|func|function|const|#include)\b",
    re.MULTILINE,
)
BRACE_CHARS = frozenset("{}[]();")
# Share of punctuation above which text is treated as code
BRACE_DENSITY_THRESHOLD = 0.02
TOOL_CALL_OVERHEAD = 50


def looks_like_code(text: str) -> bool:
    """Detect fenced blocks, line-leading declarations or dense bracket punctuation."""
    if not text:
        return False
    if CODE_FENCE in text or CODE_LINE_START.search(text):
        return True
    braces = sum(1 for ch in text if ch in BRACE_CHARS)
    return braces / len(text) >= BRACE_DENSITY_THRESHOLD


def estimate_tokens(text: str) -> int:
    """About len/4 for prose, len/3 for code."""
    if not text:
        return 0
    divisor = 3 if looks_like_code(text) else 4
    return math.ceil(len(text) / divisor)


def estimate_message_tokens(message: ChatMessage) -> int:
    tokens = estimate_tokens(message.content)
    for call in message.tool_calls:
        tokens += TOOL_CALL_OVERHEAD + estimate_tokens(call.arguments)
    return tokens


def estimate_messages_tokens(messages: list[ChatMessage]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


__all__ = [
    "looks_like_code",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_messages_tokens",
]
