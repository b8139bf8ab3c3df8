"""
Quality rules for normalized sub-agent results.

Universal rules apply to every role. Technical rules apply only to roles
whose policy marks them technical (and, for code snippets, code-bearing),
so their weights only count for those roles.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from ..agents.presets import RolePolicy
from ..types import CompletionStatus, Confidence, NormalizedResult


class Severity(str, Enum):
    """How serious a rule failure is."""

    CRITICAL = "critical"
    IMPORTANT = "important"
    MINOR = "minor"


@dataclass
class RuleResult:
    """Independent judgement from one rule."""

    name: str
    category: str
    passed: bool
    score: int
    severity: Severity
    feedback: str


@dataclass
class ValidationContext:
    """What the result is judged against."""

    role: str
    task: str
    policy: RolePolicy
    expected_deliverables: str = ""

    @property
    def threshold(self) -> int:
        return self.policy.quality_threshold


Evaluator = Callable[[NormalizedResult, ValidationContext], RuleResult]


def _always(context: ValidationContext) -> bool:
    return True


def _technical(context: ValidationContext) -> bool:
    return context.policy.technical


def _code_bearing(context: ValidationContext) -> bool:
    return context.policy.expects_code


@dataclass
class QualityRule:
    """A weighted evaluator plus the predicate deciding where it applies."""

    name: str
    category: str
    weight: float
    evaluator: Evaluator
    applies: Callable[[ValidationContext], bool] = _always

    def applies_to(self, context: ValidationContext) -> bool:
        return self.applies(context)

    def evaluate(self, result: NormalizedResult, context: ValidationContext) -> RuleResult:
        outcome = self.evaluator(result, context)
        return replace(outcome, name=self.name, category=self.category)


def _judgement(score: float, passed: bool, severity: Severity, feedback: str) -> RuleResult:
    # name and category are stamped by QualityRule.evaluate
    return RuleResult(
        name="",
        category="",
        passed=passed,
        score=max(0, min(100, int(round(score)))),
        severity=severity,
        feedback=feedback,
    )


def _full_text(result: NormalizedResult) -> str:
    return f"{result.deliverables.analysis} {' '.join(result.deliverables.recommendations)}"


# ----------------------------------------------------------------------
# Universal rules
# ----------------------------------------------------------------------

VALID_MEMORY_OPERATIONS = frozenset({
    "create_entities",
    "add_observations",
    "create_relations",
    "delete_entities",
    "delete_observations",
    "delete_relations",
})


def evaluate_format_compliance(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    has_deliverables = "deliverables" not in result.missing_sections and result.deliverables.has_content()
    has_memory_ops = "memory_operations" not in result.missing_sections
    has_metadata = "metadata" not in result.missing_sections

    score = (40 if has_deliverables else 0) + (30 if has_memory_ops else 0) + (30 if has_metadata else 0)
    if score >= 80:
        feedback = "Response format is valid"
    else:
        missing = ", ".join(result.missing_sections) or "deliverables"
        feedback = f"Response structure is incomplete - missing required sections ({missing})"
    return _judgement(
        score,
        passed=score >= 80,
        severity=Severity.CRITICAL if score < 50 else Severity.IMPORTANT,
        feedback=feedback,
    )


def evaluate_deliverables_completeness(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    deliverables = result.deliverables
    score = 0
    issues: list[str] = []

    if len(deliverables.analysis) > 100:
        score += 40
    else:
        issues.append("analysis is missing or too brief")

    if deliverables.recommendations:
        score += 30
    else:
        issues.append("recommendations are missing")

    if deliverables.documents:
        score += 30
    elif "document" in context.expected_deliverables.lower():
        issues.append("expected documents are missing")
    else:
        score += 30

    feedback = (
        f"Deliverables incomplete: {', '.join(issues)}" if issues
        else "All required deliverables are present"
    )
    return _judgement(
        score,
        passed=score >= 70,
        severity=Severity.CRITICAL if score < 40 else Severity.IMPORTANT,
        feedback=feedback,
    )


def evaluate_memory_operations(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    operations = result.memory_operations
    if not operations:
        return _judgement(
            20,
            passed=False,
            severity=Severity.MINOR,
            feedback="No memory operations provided - knowledge may not be captured",
        )

    valid = sum(1 for op in operations if op.operation in VALID_MEMORY_OPERATIONS)
    score = valid / len(operations) * 100
    if score >= 80:
        feedback = "Memory operations are valid"
    else:
        invalid = sorted({op.operation for op in operations if op.operation not in VALID_MEMORY_OPERATIONS})
        feedback = f"Some memory operations have invalid types: {', '.join(invalid)}"
    return _judgement(
        score,
        passed=score >= 80,
        severity=Severity.IMPORTANT if score < 50 else Severity.MINOR,
        feedback=feedback,
    )


_STATUS_POINTS = {
    CompletionStatus.COMPLETE: 50,
    CompletionStatus.PARTIAL: 30,
    CompletionStatus.FAILED: 0,
}
_CONFIDENCE_POINTS = {
    Confidence.HIGH: 30,
    Confidence.MEDIUM: 20,
    Confidence.LOW: 10,
}


def evaluate_task_completion(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    metadata = result.metadata
    score = _STATUS_POINTS[metadata.task_completion_status] + _CONFIDENCE_POINTS[metadata.confidence_level]

    processing_ms = metadata.processing_time_ms()
    if 0 < processing_ms < 300_000:
        score += 20

    issues: list[str] = []
    if metadata.task_completion_status == CompletionStatus.FAILED and metadata.confidence_level == Confidence.HIGH:
        score -= 20
        issues.append("failed status reported with high confidence")

    if issues:
        feedback = f"Task completion indicators are inconsistent: {', '.join(issues)}"
    elif score >= 70:
        feedback = "Task completion indicators are satisfactory"
    else:
        feedback = "Task completion assessment indicates potential issues"
    return _judgement(
        score,
        passed=score >= 70 and not issues,
        severity=Severity.IMPORTANT if score < 40 else Severity.MINOR,
        feedback=feedback,
    )


_WORD = re.compile(r"[a-z0-9][a-z0-9_\-]*")


def evaluate_response_quality(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    analysis = result.deliverables.analysis
    recommendations = result.deliverables.recommendations
    score = 0.0
    issues: list[str] = []

    if len(analysis) > 500:
        score += 30
    elif len(analysis) > 200:
        score += 20
    else:
        issues.append("analysis lacks depth")

    if len(recommendations) >= 3:
        score += 25
    elif recommendations:
        score += 15
    else:
        issues.append("insufficient recommendations")

    task_words = _WORD.findall(context.task.lower())
    if task_words:
        response_text = f"{analysis} {' '.join(recommendations)}".lower()
        aligned = sum(1 for word in task_words if word in response_text)
        score += round(aligned / len(task_words) * 45)

    feedback = (
        f"Content quality issues: {', '.join(issues)}" if issues
        else "Response content meets quality standards"
    )
    return _judgement(score, passed=score >= 70, severity=Severity.IMPORTANT, feedback=feedback)


# ----------------------------------------------------------------------
# Technical rules
# ----------------------------------------------------------------------

FILE_PATH_PATTERNS = (
    re.compile(r"[a-zA-Z0-9_-]+/[a-zA-Z0-9_/-]+\.[a-zA-Z0-9]+"),
    re.compile(r"src/[a-zA-Z0-9_/-]+"),
    re.compile(r"config/[a-zA-Z0-9_/-]+"),
    re.compile(r"\./[a-zA-Z0-9_/-]+"),
    re.compile(r"/[a-zA-Z0-9_/-]+\.[a-zA-Z0-9]+"),
)
LINE_REFERENCE_PATTERNS = (
    re.compile(r"lines?\s+\d+(?:-\d+)?", re.IGNORECASE),
    re.compile(r"\w:\d+"),
)
DIRECTORY_PATTERNS = (
    re.compile(r"src/[a-zA-Z0-9_-]+"),
    re.compile(r"components?/[a-zA-Z0-9_-]+"),
    re.compile(r"utils?/[a-zA-Z0-9_-]+"),
    re.compile(r"services?/[a-zA-Z0-9_-]+"),
)


def evaluate_file_path_specificity(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    text = _full_text(result)
    score = 0
    issues: list[str] = []

    paths: set[str] = set()
    for pattern in FILE_PATH_PATTERNS:
        paths.update(pattern.findall(text))

    if len(paths) >= 3:
        score += 50
    elif paths:
        score += 25
    else:
        issues.append("no specific file paths found")

    if any(pattern.search(text) for pattern in LINE_REFERENCE_PATTERNS):
        score += 30
    else:
        issues.append("no line number references found")

    if any(pattern.search(text) for pattern in DIRECTORY_PATTERNS):
        score += 20

    if issues:
        feedback = f"File specificity issues: {', '.join(issues)}. Found {len(paths)} file references."
    else:
        feedback = f"Good file specificity: Found {len(paths)} specific file paths"
    return _judgement(
        score,
        passed=score >= 50,
        severity=Severity.CRITICAL if score < 25 else Severity.IMPORTANT,
        feedback=feedback,
    )


CODE_PATTERNS = (
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"`[^`\n]+`"),
    re.compile(r"\bdef\s+[a-zA-Z_]\w*\s*\("),
    re.compile(r"\bfunction\s+[a-zA-Z_]\w*\s*\("),
    re.compile(r"\bclass\s+[a-zA-Z_]\w*"),
    re.compile(r"\bconst\s+[a-zA-Z_]\w*\s*="),
    re.compile(r"\bif\s*\([^)]+\)\s*\{"),
    re.compile(r"\bSELECT\s+[\s\S]*?\bFROM\b", re.IGNORECASE),
    re.compile(r"\bCREATE\s+TABLE\b", re.IGNORECASE),
)
GENERIC_CODE_TERMS = ("example", "pseudo", "sample", "template", "placeholder")


def evaluate_code_snippet_presence(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    text = _full_text(result)
    score = 0
    issues: list[str] = []

    snippets = sum(len(pattern.findall(text)) for pattern in CODE_PATTERNS)
    if snippets >= 3:
        score += 60
    elif snippets >= 1:
        score += 30
    else:
        issues.append("no code snippets found")

    if snippets:
        lowered = text.lower()
        if any(term in lowered for term in GENERIC_CODE_TERMS):
            score += 20
            issues.append("appears to use generic examples rather than actual code")
        else:
            score += 40

    if issues:
        feedback = f"Code snippet issues: {', '.join(issues)}. Found {snippets} code references."
    else:
        feedback = f"Good code specificity: Found {snippets} actual code snippets"
    return _judgement(
        score,
        passed=score >= 50,
        severity=Severity.CRITICAL if score < 30 else Severity.IMPORTANT,
        feedback=feedback,
    )


VAGUE_TERMS = (
    "security vulnerabilities", "performance issues", "best practices",
    "code quality", "optimization opportunities", "potential problems",
    "may have", "could be", "might contain", "generally", "typically",
    "standard practices", "common issues", "usual problems",
)
SPECIFIC_TERMS = (
    "algorithm", "function", "method", "variable", "parameter",
    "injection", "xss", "csrf", "jwt", "sql", "nosql",
    "middleware", "controller", "service", "repository",
    "index", "query", "schema", "migration", "constraint",
    "dependency", "import", "export", "configuration",
)
ACTIONABLE_TERMS = (
    "change line", "modify function", "update configuration",
    "add validation", "remove code", "refactor method",
    "fix query", "update schema", "install package",
)


def evaluate_concrete_analysis_depth(result: NormalizedResult, context: ValidationContext) -> RuleResult:
    lowered = _full_text(result).lower()
    score = 0
    issues: list[str] = []

    vagueness = sum(1 for term in VAGUE_TERMS if term in lowered)
    if vagueness <= 2:
        score += 40
    elif vagueness <= 5:
        score += 20
    else:
        issues.append(f"too many vague terms used ({vagueness} found)")

    specificity = sum(1 for term in SPECIFIC_TERMS if term in lowered)
    if specificity >= 5:
        score += 40
    elif specificity >= 3:
        score += 25
    else:
        issues.append(f"insufficient technical specificity ({specificity} technical terms)")

    actionable = sum(1 for term in ACTIONABLE_TERMS if term in lowered)
    if actionable >= 2:
        score += 20
    elif actionable >= 1:
        score += 10
    else:
        issues.append("lacks actionable recommendations")

    if issues:
        feedback = (
            f"Analysis depth issues: {', '.join(issues)}. "
            f"Specificity: {specificity} technical terms, Vagueness: {vagueness} vague terms."
        )
    else:
        feedback = f"Good analysis depth: {specificity} technical terms, {actionable} actionable recommendations"
    return _judgement(
        score,
        passed=score >= 60,
        severity=Severity.CRITICAL if score < 40 else Severity.IMPORTANT,
        feedback=feedback,
    )


UNIVERSAL_RULES: tuple[QualityRule, ...] = (
    QualityRule("format_compliance", "format", 0.2, evaluate_format_compliance),
    QualityRule("deliverables_completeness", "completeness", 0.25, evaluate_deliverables_completeness),
    QualityRule("memory_operations_validity", "memory", 0.15, evaluate_memory_operations),
    QualityRule("task_completion", "completion", 0.2, evaluate_task_completion),
    QualityRule("response_quality", "content", 0.2, evaluate_response_quality),
)

TECHNICAL_RULES: tuple[QualityRule, ...] = (
    QualityRule("file_path_specificity", "specificity", 0.25, evaluate_file_path_specificity, _technical),
    QualityRule("code_snippet_presence", "specificity", 0.25, evaluate_code_snippet_presence, _code_bearing),
    QualityRule("concrete_analysis_depth", "specificity", 0.3, evaluate_concrete_analysis_depth, _technical),
)

DEFAULT_RULES: tuple[QualityRule, ...] = UNIVERSAL_RULES + TECHNICAL_RULES


__all__ = [
    "Severity",
    "RuleResult",
    "ValidationContext",
    "QualityRule",
    "VALID_MEMORY_OPERATIONS",
    "UNIVERSAL_RULES",
    "TECHNICAL_RULES",
    "DEFAULT_RULES",
]
