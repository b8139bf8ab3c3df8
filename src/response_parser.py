"""
Tolerant parsing of sub-agent responses.

Raw model text is turned into a NormalizedResult in stages:

1. direct: the first "{" through the last "}" parsed as JSON
2. repaired: fences stripped, truncation and trailing commas fixed
3. corrected: an external Corrector rewrites the text (optional)
4. heuristic: analysis and list items scraped from plain text

normalize() and normalize_with_correction() never raise; the last stage
always produces a result.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from typing import TYPE_CHECKING, Any

from .types import (
    RESULT_SECTIONS,
    ChatMessage,
    CompletionStatus,
    Confidence,
    Deliverables,
    MemoryOperation,
    NormalizedResult,
    ParseStage,
    ResultMetadata,
)

if TYPE_CHECKING:
    from .interfaces import Corrector, Provider

logger = logging.getLogger(__name__)

RESPONSE_FORMAT = """Respond with a single JSON object and nothing else:
{
  "deliverables": {
    "analysis": "detailed analysis text",
    "recommendations": ["specific recommendation", "..."],
    "documents": ["produced artifact", "..."]
  },
  "memory_operations": [
    {"operation": "create_entities", "data": {}}
  ],
  "metadata": {
    "task_completion_status": "complete | partial | failed",
    "processing_time": "elapsed time",
    "confidence_level": "high | medium | low"
  }
}"""

FENCE = re.compile(r"```(?:json|JSON)?")
TRAILING_COMMA = re.compile(r",\s*([}\]])")
LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$")
ERROR_INDICATOR = re.compile(r"\berror\b", re.IGNORECASE)

HEURISTIC_MIN_LINE = 30
HEURISTIC_ANALYSIS_LINES = 3
HEURISTIC_ANALYSIS_CHARS = 500
HEURISTIC_MIN_RECOMMENDATION = 10
HEURISTIC_MAX_RECOMMENDATIONS = 5
PARSE_FAILED_DOCUMENT = "Parsing failed - raw content preserved"

_STATUS_VALUES = {s.value for s in CompletionStatus}
_CONFIDENCE_VALUES = {c.value for c in Confidence}

# Everything a malformed payload can make json/our coercion raise
_PARSE_ERRORS = (ValueError, TypeError, KeyError, RecursionError)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _as_text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [_as_text(item) for item in value if item is not None and _as_text(item).strip()]
    return [_as_text(value)]


def _memory_operations(value: Any) -> list[MemoryOperation]:
    if not isinstance(value, list):
        return []
    operations: list[MemoryOperation] = []
    for item in value:
        if not isinstance(item, dict) or not isinstance(item.get("operation"), str):
            continue
        data = item.get("data")
        if not isinstance(data, dict):
            data = {k: v for k, v in item.items() if k != "operation"}
        operations.append(MemoryOperation(operation=item["operation"], data=data))
    return operations


def build_result(data: Any, role: str) -> NormalizedResult:
    """
    Validate a decoded payload and fill optional fields with defaults.

    Raises:
        ValueError: Payload is not an object or carries no deliverables
    """
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")

    raw_deliverables = data.get("deliverables")
    if not isinstance(raw_deliverables, dict):
        if any(key in data for key in ("analysis", "recommendations", "documents")):
            raw_deliverables = data
        else:
            raise ValueError("missing deliverables object")

    deliverables = Deliverables(
        analysis=_as_text(raw_deliverables.get("analysis")),
        recommendations=_as_text_list(raw_deliverables.get("recommendations")),
        documents=_as_text_list(raw_deliverables.get("documents")),
    )
    if not deliverables.has_content():
        raise ValueError("deliverables are empty")

    raw_metadata = data.get("metadata")
    if not isinstance(raw_metadata, dict):
        raw_metadata = {}

    status = _as_text(raw_metadata.get("task_completion_status")).lower()
    confidence = _as_text(
        raw_metadata.get("confidence_level", raw_metadata.get("confidence"))
    ).lower()
    processing_time = raw_metadata.get("processing_time")

    metadata = ResultMetadata(
        role=role,
        task_completion_status=CompletionStatus(status) if status in _STATUS_VALUES else CompletionStatus.COMPLETE,
        processing_time=_as_text(processing_time) if processing_time not in (None, "") else "unknown",
        confidence_level=Confidence(confidence) if confidence in _CONFIDENCE_VALUES else Confidence.MEDIUM,
    )
    missing: list[str] = []
    if raw_deliverables is data:
        missing.append("deliverables")
    if not isinstance(data.get("memory_operations"), list):
        missing.append("memory_operations")
    if not isinstance(data.get("metadata"), dict):
        missing.append("metadata")

    return NormalizedResult(
        deliverables=deliverables,
        metadata=metadata,
        memory_operations=_memory_operations(data.get("memory_operations")),
        missing_sections=missing,
    )


def extract_json_object(text: str) -> str:
    """
    Substring from the first "{" to the last "}".

    Raises:
        ValueError: No brace-delimited span in text
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("no JSON object found")
    return text[start:end + 1]


def _close_open_structures(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    if in_string:
        text += '"'
    if stack:
        text = text.rstrip().rstrip(",") + "".join(reversed(stack))
    return text


def repair_json_text(text: str) -> str:
    """
    Best-effort fix of common model JSON damage.

    Strips fence markers and leading prose, cuts after the last closing
    brace, removes trailing commas and closes structures left open by a
    truncated response.

    Raises:
        ValueError: No opening brace at all
    """
    cleaned = FENCE.sub("", text).strip()
    start = cleaned.find("{")
    if start == -1:
        raise ValueError("no JSON object found")
    cleaned = cleaned[start:]

    end = cleaned.rfind("}")
    if end != -1:
        cleaned = cleaned[:end + 1]

    cleaned = TRAILING_COMMA.sub(r"\1", cleaned)
    cleaned = _close_open_structures(cleaned)
    return TRAILING_COMMA.sub(r"\1", cleaned)


def heuristic_result(text: str, role: str) -> NormalizedResult:
    """Scrape a result from plain text. Never fails."""
    lines: list[str] = []
    in_fence = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            in_fence = not in_fence
            continue
        if not in_fence and stripped:
            lines.append(stripped)

    recommendations: list[str] = []
    prose: list[str] = []
    for line in lines:
        match = LIST_ITEM.match(line)
        if match:
            item = match.group(1).strip()
            if len(item) > HEURISTIC_MIN_RECOMMENDATION and len(recommendations) < HEURISTIC_MAX_RECOMMENDATIONS:
                recommendations.append(item)
            continue
        if len(line) > HEURISTIC_MIN_LINE and not line.startswith("#"):
            prose.append(line)

    if prose:
        analysis = "\n".join(prose[:HEURISTIC_ANALYSIS_LINES])
    else:
        analysis = text.strip()[:HEURISTIC_ANALYSIS_CHARS]

    deliverables = Deliverables(analysis=analysis, recommendations=recommendations)
    if not deliverables.has_content():
        deliverables.documents = [PARSE_FAILED_DOCUMENT]

    status = CompletionStatus.FAILED if ERROR_INDICATOR.search(text) else CompletionStatus.PARTIAL
    return NormalizedResult(
        deliverables=deliverables,
        metadata=ResultMetadata(
            role=role,
            task_completion_status=status,
            confidence_level=Confidence.LOW,
        ),
        parse_stage=ParseStage.HEURISTIC,
        missing_sections=list(RESULT_SECTIONS[1:]),
    )


class ResponseNormalizer:
    """
    Turns raw provider text into a NormalizedResult.

    Tracks how often each stage succeeded in stage_counts.
    """

    def __init__(self, max_correction_attempts: int = 1):
        self.max_correction_attempts = max_correction_attempts
        self.stage_counts: Counter[ParseStage] = Counter()

    def normalize(self, raw_text: str, role: str) -> NormalizedResult:
        """
        Parse without a corrector: direct, repaired, then heuristic.

        Args:
            raw_text: Model output
            role: Role name recorded in the result metadata

        Returns:
            NormalizedResult with parse_stage set
        """
        text = raw_text if isinstance(raw_text, str) else _as_text(raw_text)
        result, problem = self._structured(text, role)
        if result is None:
            result = self._fallback(text, role, problem)
        return self._finish(result, text)

    async def normalize_with_correction(
        self,
        raw_text: str,
        role: str,
        corrector: "Corrector | None" = None,
    ) -> NormalizedResult:
        """Like normalize(), with a bounded corrector stage before the fallback."""
        text = raw_text if isinstance(raw_text, str) else _as_text(raw_text)
        result, problem = self._structured(text, role)
        if result is not None:
            return self._finish(result, text)

        if corrector is not None:
            for attempt in range(1, self.max_correction_attempts + 1):
                try:
                    corrected = await corrector.correct(text, problem)
                except Exception as e:
                    logger.warning(f"Corrector attempt {attempt} failed for {role}: {e}")
                    break
                if not corrected:
                    break
                result, problem = self._structured(corrected, role)
                if result is not None:
                    result.parse_stage = ParseStage.CORRECTED
                    logger.info(f"Response for {role} recovered by corrector on attempt {attempt}")
                    return self._finish(result, text)

        return self._finish(self._fallback(text, role, problem), text)

    def _structured(self, text: str, role: str) -> tuple[NormalizedResult | None, str]:
        try:
            result = build_result(json.loads(extract_json_object(text)), role)
            result.parse_stage = ParseStage.DIRECT
            return result, ""
        except _PARSE_ERRORS as e:
            problem = str(e) or type(e).__name__

        try:
            result = build_result(json.loads(repair_json_text(text)), role)
            result.parse_stage = ParseStage.REPAIRED
            logger.warning(f"Response for {role} needed repair: {problem}")
            return result, ""
        except _PARSE_ERRORS as e:
            return None, str(e) or problem

    def _fallback(self, text: str, role: str, problem: str) -> NormalizedResult:
        logger.warning(f"Falling back to heuristic parsing for {role}: {problem}")
        return heuristic_result(text, role)

    def _finish(self, result: NormalizedResult, raw_text: str) -> NormalizedResult:
        result.raw_text = raw_text
        self.stage_counts[result.parse_stage] += 1
        return result


class ProviderCorrector:
    """Corrector that asks the provider to re-emit the content as valid JSON."""

    SYSTEM_PROMPT = (
        "You repair malformed JSON produced by another assistant. Keep the "
        "content, fix the structure.\n\n" + RESPONSE_FORMAT
    )

    def __init__(self, provider: "Provider", max_tokens: int = 2000, max_input_chars: int = 12000):
        self.provider = provider
        self.max_tokens = max_tokens
        self.max_input_chars = max_input_chars

    async def correct(self, raw_text: str, problem: str) -> str | None:
        messages = [
            ChatMessage.system(self.SYSTEM_PROMPT),
            ChatMessage.user(
                f"The following response could not be parsed ({problem}). "
                f"Return it as a valid JSON object:\n\n{raw_text[:self.max_input_chars]}"
            ),
        ]
        response = await self.provider.send(messages, self.max_tokens, 0.0)
        return response.text or None


__all__ = [
    "RESPONSE_FORMAT",
    "ResponseNormalizer",
    "ProviderCorrector",
    "build_result",
    "extract_json_object",
    "repair_json_text",
    "heuristic_result",
]
