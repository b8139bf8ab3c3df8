"""
Quality validator: weighted rule scoring for normalized results.

The overall score is the weight-normalized average of the rules that
apply to the role, so roles without technical rules are not penalized
for their absence.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from ..agents.presets import DEFAULT_ROLE, RolePolicy, policy_for
from ..types import Confidence, NormalizedResult
from .rules import DEFAULT_RULES, QualityRule, RuleResult, Severity, ValidationContext

logger = logging.getLogger(__name__)


@dataclass
class QualityAssessment:
    """Scored judgement of one result."""

    role: str
    overall_score: int
    passed: bool
    threshold: int
    rule_results: list[RuleResult] = field(default_factory=list)
    categories: dict[str, int] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)
    confidence: Confidence = Confidence.LOW
    can_refine: bool = False
    refinement_suggestions: list[str] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def has_critical_failure(self) -> bool:
        return any(not r.passed and r.severity == Severity.CRITICAL for r in self.rule_results)

    @property
    def failed_rules(self) -> list[RuleResult]:
        return [r for r in self.rule_results if not r.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "overall_score": self.overall_score,
            "passed": self.passed,
            "threshold": self.threshold,
            "categories": dict(self.categories),
            "recommendations": list(self.recommendations),
            "critical_issues": list(self.critical_issues),
            "confidence": self.confidence.value,
            "can_refine": self.can_refine,
            "refinement_suggestions": list(self.refinement_suggestions),
            "rule_results": [
                {
                    "name": r.name,
                    "category": r.category,
                    "passed": r.passed,
                    "score": r.score,
                    "severity": r.severity.value,
                    "feedback": r.feedback,
                }
                for r in self.rule_results
            ],
        }


class QualityValidator:
    """
    Applies the rule set to a result and aggregates the judgements.

    Example:
        validator = QualityValidator()
        context = validator.context_for("Security Engineer", task="Audit login flow")
        assessment = validator.validate(result, context)
    """

    def __init__(self, rules: tuple[QualityRule, ...] | list[QualityRule] = DEFAULT_RULES, default_threshold: int = 70):
        self.rules = list(rules)
        self.default_threshold = default_threshold

    def context_for(self, role: str, task: str, expected_deliverables: str = "") -> ValidationContext:
        return ValidationContext(
            role=role,
            task=task,
            policy=policy_for(role, self.default_threshold),
            expected_deliverables=expected_deliverables,
        )

    def applicable_rules(self, context: ValidationContext) -> list[QualityRule]:
        return [rule for rule in self.rules if rule.applies_to(context)]

    def validate(self, result: NormalizedResult, context: ValidationContext) -> QualityAssessment:
        """
        Score a result against every applicable rule.

        Args:
            result: Normalized sub-agent output
            context: Role, task and policy to judge against

        Returns:
            QualityAssessment with per-rule results and aggregates
        """
        start = time.monotonic()
        rules = self.applicable_rules(context)

        results: list[RuleResult] = []
        for rule in rules:
            try:
                results.append(rule.evaluate(result, context))
            except Exception as e:
                logger.warning(f"Quality rule {rule.name} failed: {e}")
                results.append(RuleResult(
                    name=rule.name,
                    category=rule.category,
                    passed=False,
                    score=0,
                    severity=Severity.MINOR,
                    feedback=f"Rule evaluation failed: {rule.name}",
                ))

        score = weighted_score(results, rules)
        threshold = context.threshold
        assessment = QualityAssessment(
            role=context.role,
            overall_score=score,
            passed=score >= threshold,
            threshold=threshold,
            rule_results=results,
            categories=_categories(results),
            recommendations=_recommendations(results, context.policy, context.role),
            critical_issues=[r.feedback for r in results if not r.passed and r.severity == Severity.CRITICAL],
            confidence=_confidence(results, score),
            processing_time_ms=max(1.0, (time.monotonic() - start) * 1000),
        )
        improvable = [r for r in results if not r.passed and r.severity != Severity.CRITICAL]
        assessment.can_refine = not assessment.passed and (bool(improvable) or score > threshold * 0.8)
        if assessment.can_refine:
            assessment.refinement_suggestions = [f"Improve {r.category}: {r.feedback}" for r in improvable]

        logger.info(
            f"Quality validation for {context.role}: score={score} threshold={threshold} "
            f"passed={assessment.passed} rules={len(results)}"
        )
        return assessment


def weighted_score(results: list[RuleResult], rules: list[QualityRule]) -> int:
    """Weight-normalized average over the rules actually applied."""
    total_weight = sum(rule.weight for rule in rules[:len(results)])
    if not results or total_weight <= 0:
        return 0
    weighted = sum(result.score * rule.weight for result, rule in zip(results, rules))
    return int(round(weighted / total_weight))


def _categories(results: list[RuleResult]) -> dict[str, int]:
    grouped: dict[str, list[int]] = defaultdict(list)
    for result in results:
        grouped[result.category].append(result.score)
    return {category: int(round(sum(scores) / len(scores))) for category, scores in grouped.items()}


def _recommendations(results: list[RuleResult], policy: RolePolicy, role: str) -> list[str]:
    recommendations = [r.feedback for r in results if not r.passed and r.feedback]
    if recommendations and policy.name != DEFAULT_ROLE:
        recommendations.append(f"Consider the specific requirements for {role} when refining the response.")
    return recommendations


def _confidence(results: list[RuleResult], score: int) -> Confidence:
    if not results:
        return Confidence.LOW
    success_rate = sum(1 for r in results if r.passed) / len(results)
    if score >= 85 and success_rate >= 0.9:
        return Confidence.HIGH
    if score >= 60 and success_rate >= 0.7:
        return Confidence.MEDIUM
    return Confidence.LOW


__all__ = [
    "QualityAssessment",
    "QualityValidator",
    "ValidationContext",
    "weighted_score",
]
