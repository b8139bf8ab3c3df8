"""
Shared value types for the sub-agent pipeline.

Messages follow the role-tagged chat format used by both provider
adapters. NormalizedResult mirrors the JSON shape sub-agents are asked to
produce, so to_dict() output can be fed straight back to the normalizer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator


RESULT_SECTIONS = ("deliverables", "memory_operations", "metadata")


class MessageRole(str, Enum):
    """Chat message role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class CompletionStatus(str, Enum):
    """How far the sub-agent got with its task."""

    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class Confidence(str, Enum):
    """Self-reported or assessed confidence."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Urgency(str, Enum):
    """Request urgency, drives default timeout and context budget."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ParseStage(str, Enum):
    """Which normalizer stage produced a result."""

    DIRECT = "direct"
    REPAIRED = "repaired"
    CORRECTED = "corrected"
    HEURISTIC = "heuristic"


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """
        Decode the JSON argument string.

        Raises:
            ValueError: If arguments are not a JSON object
        """
        if not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError(f"tool arguments must be a JSON object, got {type(value).__name__}")
        return value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatMessage:
    """One role-tagged message in a conversation."""

    role: MessageRole
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    def copy(self, **changes: Any) -> "ChatMessage":
        """Return an independent copy, optionally with fields replaced."""
        if "tool_calls" not in changes:
            changes["tool_calls"] = [replace(tc) for tc in self.tool_calls]
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> "ChatMessage":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None) -> "ChatMessage":
        return cls(role=MessageRole.TOOL, content=content, tool_call_id=tool_call_id, name=name)


@dataclass
class ToolSpec:
    """Tool definition advertised to the provider."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class TokenUsage:
    """Token counts reported by a provider. Zero means unknown."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def is_known(self) -> bool:
        return self.total > 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ConversationRecord:
    """
    Ordered, append-only message history for one invocation.

    Truncation and pruning only ever happen on copies returned by
    derived_copy(); the record itself is never rewritten.
    """

    def __init__(self, messages: list[ChatMessage] | None = None):
        self._messages: list[ChatMessage] = [m.copy() for m in (messages or [])]

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    def extend(self, messages: list[ChatMessage]) -> None:
        for message in messages:
            self.append(message)

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> ChatMessage | None:
        return self._messages[-1] if self._messages else None

    def derived_copy(self) -> list[ChatMessage]:
        """Independent message list safe to prune or truncate."""
        return [m.copy() for m in self._messages]

    def fork(self) -> "ConversationRecord":
        """Working copy for one attempt."""
        return ConversationRecord(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(tuple(self._messages))


@dataclass
class MemoryOperation:
    """A proposed knowledge-graph side effect; data is opaque to the core."""

    operation: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"operation": self.operation, "data": self.data}


@dataclass
class Deliverables:
    """Free-form analysis plus ordered recommendations and documents."""

    analysis: str = ""
    recommendations: list[str] = field(default_factory=list)
    documents: list[str] = field(default_factory=list)

    def has_content(self) -> bool:
        return bool(self.analysis.strip() or self.recommendations or self.documents)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis": self.analysis,
            "recommendations": list(self.recommendations),
            "documents": list(self.documents),
        }


@dataclass
class ResultMetadata:
    """Role name, status, timing and confidence of one attempt."""

    role: str
    task_completion_status: CompletionStatus = CompletionStatus.COMPLETE
    processing_time: str = "unknown"
    confidence_level: Confidence = Confidence.MEDIUM

    def processing_time_ms(self) -> int:
        """Leading integer of processing_time, 0 when absent."""
        digits = ""
        for ch in self.processing_time.strip():
            if not ch.isdigit():
                break
            digits += ch
        return int(digits) if digits else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "task_completion_status": self.task_completion_status.value,
            "processing_time": self.processing_time,
            "confidence_level": self.confidence_level.value,
        }


@dataclass
class NormalizedResult:
    """Structured output of one invocation attempt."""

    deliverables: Deliverables
    metadata: ResultMetadata
    memory_operations: list[MemoryOperation] = field(default_factory=list)
    parse_stage: ParseStage = ParseStage.DIRECT
    raw_text: str = field(default="", repr=False)
    # Top-level sections absent from the payload and filled with defaults
    missing_sections: list[str] = field(default_factory=list)

    @property
    def status(self) -> CompletionStatus:
        return self.metadata.task_completion_status

    @property
    def is_failed(self) -> bool:
        return self.metadata.task_completion_status == CompletionStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "deliverables": self.deliverables.to_dict(),
            "memory_operations": [op.to_dict() for op in self.memory_operations],
            "metadata": self.metadata.to_dict(),
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def failure(cls, role: str, message: str, processing_time: str = "unknown") -> "NormalizedResult":
        """Well-formed failed result for transport errors and timeouts."""
        return cls(
            deliverables=Deliverables(analysis=f"Error: {message}"),
            metadata=ResultMetadata(
                role=role,
                task_completion_status=CompletionStatus.FAILED,
                processing_time=processing_time,
                confidence_level=Confidence.LOW,
            ),
            parse_stage=ParseStage.HEURISTIC,
            missing_sections=list(RESULT_SECTIONS[1:]),
        )


__all__ = [
    "RESULT_SECTIONS",
    "MessageRole",
    "CompletionStatus",
    "Confidence",
    "Urgency",
    "ParseStage",
    "ToolCall",
    "ChatMessage",
    "ToolSpec",
    "TokenUsage",
    "ConversationRecord",
    "MemoryOperation",
    "Deliverables",
    "ResultMetadata",
    "NormalizedResult",
]
