"""
Salient-unit extraction from background material.

Pulls out named components, relationship statements, constraints and
decisions line by line. Each list keeps first-seen order without
duplicates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

COMPONENT_ENTITY = re.compile(
    r"\b[A-Z][a-zA-Z]*(?:Service|Provider|Manager|System|Processor|Engine|Handler|Controller"
    r"|Repository|Factory|Builder|Validator|Analyzer|Component|Module|Gateway|Client|Server)\b"
)
# Capitalized words and runs of capitalized words ("Payment Gateway")
CAPITALIZED_PHRASE = re.compile(r"\b[A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*\b")

ENTITY_STOPWORDS = frozenset({
    "The", "This", "That", "These", "Those", "And", "But", "For", "With",
    "When", "Where", "How", "Why", "What", "All", "Any", "Each", "Our",
    "We", "It", "If", "In", "On", "To", "As", "Use", "Uses",
})

RELATIONSHIP_MARKERS = (
    "relates to", "depends on", "requires", "implements", "uses",
    "connects to", "integrates with",
)
CONSTRAINT_MARKERS = (
    "must", "cannot", "can't", "limited", "required", "restricted",
    "forbidden", "never", "at most", "no more than",
)
DECISION_MARKERS = (
    "decided", "chosen", "selected", "approach", "strategy", "option",
    "solution", "opted",
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
# Longer run-on sentences are cut at word boundaries
MAX_STATEMENT_CHARS = 400


@dataclass
class ContextUnits:
    """Salient units found in a block of background text."""

    entities: list[str] = field(default_factory=list)
    relationships: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    # Every statement in source order, used to fill leftover budget
    statements: list[str] = field(default_factory=list)


def _append_unique(items: list[str], seen: set[str], value: str) -> None:
    if value not in seen:
        seen.add(value)
        items.append(value)


def _chunk(sentence: str) -> list[str]:
    if len(sentence) <= MAX_STATEMENT_CHARS:
        return [sentence]
    chunks: list[str] = []
    current = ""
    for word in sentence.split():
        if current and len(current) + 1 + len(word) > MAX_STATEMENT_CHARS:
            chunks.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        chunks.append(current)
    return chunks


def split_statements(text: str) -> list[str]:
    """Non-empty lines, further split into sentences."""
    statements: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        for sentence in _SENTENCE_SPLIT.split(line):
            sentence = sentence.strip()
            if sentence:
                statements.extend(_chunk(sentence))
    return statements


def _entities_in(statement: str) -> list[str]:
    found = COMPONENT_ENTITY.findall(statement)
    for phrase in CAPITALIZED_PHRASE.findall(statement):
        words = phrase.split()
        while words and words[0] in ENTITY_STOPWORDS:
            words = words[1:]
        candidate = " ".join(words)
        if len(candidate) > 2 and candidate not in ENTITY_STOPWORDS:
            found.append(candidate)
    return found


def _has_marker(lowered: str, markers: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(marker)}\b", lowered) for marker in markers)


def extract_units(background: str) -> ContextUnits:
    """
    Extract salient units from background text.

    Args:
        background: Free-form background/context material

    Returns:
        ContextUnits with deduplicated entity and statement lists
    """
    units = ContextUnits()
    seen: dict[str, set[str]] = {
        "entities": set(),
        "relationships": set(),
        "constraints": set(),
        "decisions": set(),
        "statements": set(),
    }

    for statement in split_statements(background):
        lowered = statement.lower()
        _append_unique(units.statements, seen["statements"], statement)

        for entity in _entities_in(statement):
            _append_unique(units.entities, seen["entities"], entity)
        if _has_marker(lowered, RELATIONSHIP_MARKERS):
            _append_unique(units.relationships, seen["relationships"], statement)
        if _has_marker(lowered, CONSTRAINT_MARKERS):
            _append_unique(units.constraints, seen["constraints"], statement)
        if _has_marker(lowered, DECISION_MARKERS):
            _append_unique(units.decisions, seen["decisions"], statement)

    return units


def matches_domain(statement: str, requirements: list[str]) -> bool:
    """
    True when a statement mentions the lead keyword of any requirement.

    "Authentication patterns and security requirements" matches on
    "authentication".
    """
    lowered = statement.lower()
    for requirement in requirements:
        words = requirement.lower().split()
        if words and words[0] in lowered:
            return True
    return False


__all__ = [
    "ContextUnits",
    "extract_units",
    "split_statements",
    "matches_domain",
]
