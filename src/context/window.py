"""
Context window manager.

Compresses task and background material into a token budget split across
three tiers, and prunes running conversation history before it is sent
to a provider. Task text is never shortened; everything else is added
greedily in priority order and dropped whole when it does not fit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from ..config import ContextConfig
from ..errors import IntegrityViolation
from ..types import ChatMessage, MessageRole
from .extraction import ContextUnits, extract_units, matches_domain
from .history import (
    RESPONSE_TRUNCATION_MARKER,
    USER_TRUNCATION_MARKER,
    summarize_tool_payload,
    trim_code_blocks,
    truncate_text,
)
from .tokens import estimate_messages_tokens, estimate_tokens

logger = logging.getLogger(__name__)

MAX_DECISIONS = 5
MAX_RELATIONSHIPS = 10
MAX_ENTITIES = 20


@dataclass
class TierAllocation:
    """Token budget split across the three tiers."""

    task: int
    critical: int
    general: int

    @classmethod
    def from_budget(cls, budget: int, config: ContextConfig) -> "TierAllocation":
        return cls(
            task=int(budget * config.task_share),
            critical=int(budget * config.domain_share),
            general=int(budget * config.general_share),
        )


@dataclass
class IntegrityReport:
    """Outcome of checking compressed output against its source."""

    task_preserved: bool
    within_budget: bool
    excessive_compression: bool
    compression_ratio: float
    issues: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


@dataclass
class BoundedContext:
    """Compressed prompt material plus observability data."""

    text: str
    task: str
    budget: int
    original_tokens: int
    compressed_tokens: int
    included: dict[str, int] = field(default_factory=dict)
    dropped: int = 0
    passthrough: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def compression_ratio(self) -> float:
        if self.original_tokens == 0:
            return 1.0
        return self.compressed_tokens / self.original_tokens


def _join_sections(sections: list[str]) -> str:
    return "\n\n".join(s for s in sections if s) + "\n"


def _fill_tier(items: list[str], allocation: int) -> tuple[list[str], int]:
    """Take items in order while they fit; stop at the first that would overflow."""
    taken: list[str] = []
    used = 0
    for item in items:
        cost = estimate_tokens(item) + 1
        if used + cost > allocation:
            break
        taken.append(item)
        used += cost
    return taken, len(items) - len(taken)


class ContextWindowManager:
    """
    Keeps provider input inside a token budget.

    Example:
        manager = ContextWindowManager()
        bounded = manager.compress(task, background, "analysis", budget=4000,
                                   domain_requirements=role.domain_requirements)
        report = manager.validate_integrity(bounded, background, "analysis")
    """

    def __init__(self, config: ContextConfig | None = None):
        self.config = config or ContextConfig()

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def compress(
        self,
        task: str,
        background: str,
        deliverable_spec: str,
        budget: int | None = None,
        domain_requirements: list[str] | None = None,
        allow_aggressive: bool = False,
    ) -> BoundedContext:
        """
        Build bounded prompt material for one request.

        Args:
            task: Task text, always included verbatim
            background: Background material to compress
            deliverable_spec: Description of the expected output
            budget: Token budget (default: config.default_budget_tokens)
            domain_requirements: Role keywords that promote constraints to critical
            allow_aggressive: Do not warn about very high compression

        Returns:
            BoundedContext; integrity problems are attached as warnings
        """
        budget = budget if budget is not None else self.config.default_budget_tokens
        requirements = list(domain_requirements or [])
        original_tokens = estimate_tokens(task) + estimate_tokens(background) + estimate_tokens(deliverable_spec)

        header = self._task_section(task, deliverable_spec)
        footer = self._requirements_section(requirements)
        whole_background = "## Background\n" + background.strip() if background.strip() else ""
        full_text = _join_sections([header, whole_background, footer])

        passthrough = bool(whole_background) and estimate_tokens(full_text) <= budget
        if passthrough:
            text = full_text
            included = {"background": 1}
            dropped = 0
        else:
            units = extract_units(background)
            sections, included, dropped = self._tiered_sections(units, budget, requirements)
            text = _join_sections([header, *sections, footer])
            # Tier headers can outweigh a short background
            if whole_background and len(text) > len(full_text):
                logger.debug("Tiered context longer than full background, using background")
                text = full_text
                included = {"background": 1}
                dropped = 0
                passthrough = True

        bounded = BoundedContext(
            text=text,
            task=task,
            budget=budget,
            original_tokens=original_tokens,
            compressed_tokens=estimate_tokens(text),
            included=included,
            dropped=dropped,
            passthrough=passthrough,
        )

        report = self.validate_integrity(
            bounded, background, deliverable_spec, allow_aggressive=allow_aggressive
        )
        bounded.warnings.extend(report.issues)
        for issue in report.issues:
            logger.warning(f"Context integrity: {issue}")

        logger.debug(
            f"Compressed context {original_tokens} -> {bounded.compressed_tokens} tokens "
            f"(ratio={bounded.compression_ratio:.2f}, dropped={dropped})"
        )
        return bounded

    def _task_section(self, task: str, deliverable_spec: str) -> str:
        parts = ["## Task Requirements\n" + task]
        if deliverable_spec.strip():
            parts.append("## Expected Deliverables\n" + deliverable_spec)
        return "\n\n".join(parts)

    def _requirements_section(self, requirements: list[str]) -> str:
        if not requirements:
            return ""
        return "## Domain Requirements\n" + "\n".join(f"- {r}" for r in requirements)

    def _tiered_sections(
        self,
        units: ContextUnits,
        budget: int,
        requirements: list[str],
    ) -> tuple[list[str], dict[str, int], int]:
        allocation = TierAllocation.from_budget(budget, self.config)

        critical_items = [c for c in units.constraints if matches_domain(c, requirements)]
        important_items = units.decisions[-MAX_DECISIONS:] + units.relationships[:MAX_RELATIONSHIPS]
        important_items = list(dict.fromkeys(i for i in important_items if i not in critical_items))
        optional_items = units.entities[:MAX_ENTITIES]

        used_statements = set(critical_items) | set(important_items)
        leftovers = [s for s in units.statements if s not in used_statements]

        critical, dropped_critical = _fill_tier(critical_items, allocation.critical)

        # Important, then optional entities, then remaining background share one tier
        general_pool = important_items + ([", ".join(optional_items)] if optional_items else []) + leftovers
        general, dropped_general = _fill_tier(general_pool, allocation.general)

        n_important = min(len(general), len(important_items))
        important = general[:n_important]
        rest = general[n_important:]
        entity_line = rest[0] if optional_items and rest else None
        excerpt = rest[1:] if entity_line is not None else rest

        statements_text = "\n".join(critical + important + excerpt)
        if entity_line and all(e in statements_text for e in optional_items):
            entity_line = None

        sections: list[str] = []
        if critical:
            sections.append("## Critical Information\n" + "\n".join(critical))
        if important:
            sections.append("## Important Context\n" + "\n".join(important))
        if entity_line:
            sections.append("## Key Entities\n" + entity_line)
        if excerpt:
            sections.append("## Background Excerpt\n" + "\n".join(excerpt))

        included = {
            "critical": len(critical),
            "important": len(important),
            "entities": len(optional_items) if entity_line else 0,
            "excerpt": len(excerpt),
        }
        return sections, included, dropped_critical + dropped_general

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def validate_integrity(
        self,
        bounded: BoundedContext,
        background: str,
        deliverable_spec: str = "",
        allow_aggressive: bool = False,
        strict: bool = False,
    ) -> IntegrityReport:
        """
        Check that the task survived and compression was not excessive.

        Raises:
            IntegrityViolation: Only when strict and issues were found
        """
        issues: list[str] = []

        task_preserved = bounded.task in bounded.text
        if not task_preserved:
            issues.append("Task text missing from compressed context")
        for line in bounded.task.splitlines():
            line = line.strip()
            if line and line not in bounded.text:
                task_preserved = False
                issues.append(f"Task requirement missing: {line[:50]}...")

        within_budget = bounded.compressed_tokens <= bounded.budget
        if not within_budget:
            issues.append(
                f"Context exceeds token limit: {bounded.compressed_tokens} > {bounded.budget}"
            )

        ratio = bounded.compression_ratio
        excessive = ratio < self.config.min_compression_ratio and not allow_aggressive
        if excessive:
            issues.append(
                f"Excessive compression may lose important information: {ratio * 100:.1f}%"
            )

        report = IntegrityReport(
            task_preserved=task_preserved,
            within_budget=within_budget,
            excessive_compression=excessive,
            compression_ratio=ratio,
            issues=issues,
        )
        if strict and issues:
            raise IntegrityViolation("Compressed context failed integrity check", issues=issues)
        return report

    # ------------------------------------------------------------------
    # History pruning
    # ------------------------------------------------------------------

    def prune_history(
        self,
        messages: list[ChatMessage],
        max_messages: int | None = None,
        max_tokens: int | None = None,
    ) -> list[ChatMessage]:
        """
        Shrink conversation history for a provider call.

        Keeps the anchor (leading system message and the opening task
        turn) untouched, plus the newest max_messages others. Of those,
        tool results are summarized, code in assistant turns is trimmed
        and long user turns are truncated. Falls back to emergency_prune
        when the result is still over max_tokens. The input list is never
        modified.
        """
        max_messages = max_messages if max_messages is not None else self.config.max_messages
        max_tokens = max_tokens if max_tokens is not None else self.config.max_history_tokens

        anchor, others = self._split_anchor(messages)
        if len(others) > max_messages:
            start = len(others) - max_messages
            # Never start inside a tool round; pull in the requesting assistant turn
            while start > 0 and others[start].role == MessageRole.TOOL:
                start -= 1
            others = others[start:]
        others = _drop_orphan_tool_results(others)

        pruned = [m.copy() for m in anchor] + [self._shrink(m) for m in others]
        if estimate_messages_tokens(pruned) > max_tokens:
            logger.warning(
                f"History still over {max_tokens} tokens after pruning, applying emergency prune"
            )
            pruned = self.emergency_prune(pruned, max_tokens)
        return pruned

    def emergency_prune(self, messages: list[ChatMessage], max_tokens: int) -> list[ChatMessage]:
        """
        Keep the anchor, then walk newest-first until the budget is used.

        An assistant turn with tool calls and the tool results answering it
        are kept or dropped together. The newest exchange is always kept,
        truncated if it alone exceeds the remaining budget.
        """
        anchor, others = self._split_anchor(messages)
        used = estimate_messages_tokens(anchor)

        kept: list[list[ChatMessage]] = []
        for exchange in reversed(_group_exchanges(others)):
            cost = estimate_messages_tokens(exchange)
            if used + cost > max_tokens:
                if not kept:
                    remaining_chars = max(0, (max_tokens - used) * 3)
                    kept.append(_truncate_exchange(exchange, remaining_chars))
                break
            kept.append([m.copy() for m in exchange])
            used += cost

        retained = [m for exchange in reversed(kept) for m in exchange]
        return [m.copy() for m in anchor] + _drop_orphan_tool_results(retained)

    def _split_anchor(self, messages: list[ChatMessage]) -> tuple[list[ChatMessage], list[ChatMessage]]:
        anchor: list[ChatMessage] = []
        index = 0
        if messages and messages[0].role == MessageRole.SYSTEM:
            anchor.append(messages[0])
            index = 1
        # The opening user turn carries the task
        if len(messages) > index and messages[index].role == MessageRole.USER:
            anchor.append(messages[index])
            index += 1
        return anchor, list(messages[index:])

    def _shrink(self, message: ChatMessage) -> ChatMessage:
        config = self.config
        if message.role == MessageRole.TOOL:
            return message.copy(content=summarize_tool_payload(message.content))
        if message.role == MessageRole.ASSISTANT and len(message.content) > config.assistant_max_chars:
            return message.copy(content=trim_code_blocks(
                message.content, config.code_block_max_chars, config.code_block_max_lines
            ))
        if message.role == MessageRole.USER:
            return message.copy(content=truncate_text(
                message.content, config.user_max_chars, USER_TRUNCATION_MARKER
            ))
        return message.copy()


def _group_exchanges(messages: list[ChatMessage]) -> list[list[ChatMessage]]:
    """Split history into units; tool results join the assistant turn before them."""
    exchanges: list[list[ChatMessage]] = []
    for message in messages:
        if message.role == MessageRole.TOOL and exchanges and (
            exchanges[-1][0].role == MessageRole.ASSISTANT and exchanges[-1][0].tool_calls
        ):
            exchanges[-1].append(message)
        else:
            exchanges.append([message])
    return exchanges


def _truncate_exchange(exchange: list[ChatMessage], max_chars: int) -> list[ChatMessage]:
    """Share max_chars across every content and argument string in the unit."""
    fields = sum(1 + len(m.tool_calls) for m in exchange)
    share = max_chars // fields
    truncated = []
    for message in exchange:
        calls = [
            replace(call, arguments=truncate_text(call.arguments, share, RESPONSE_TRUNCATION_MARKER))
            for call in message.tool_calls
        ]
        truncated.append(message.copy(
            content=truncate_text(message.content, share, RESPONSE_TRUNCATION_MARKER),
            tool_calls=calls,
        ))
    return truncated


def _drop_orphan_tool_results(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Remove tool results whose requesting assistant turn is not in the list."""
    known_calls: set[str] = set()
    result: list[ChatMessage] = []
    for message in messages:
        if message.role == MessageRole.ASSISTANT:
            known_calls.update(tc.id for tc in message.tool_calls)
        if message.role == MessageRole.TOOL and message.tool_call_id not in known_calls:
            continue
        result.append(message)
    return result


__all__ = [
    "ContextWindowManager",
    "BoundedContext",
    "IntegrityReport",
    "TierAllocation",
]
