"""Quality layer: rule-based scoring and bounded refinement."""

from .refinement import RefinementController, classify_trend
from .rules import QualityRule, RuleResult, Severity, ValidationContext
from .validator import QualityAssessment, QualityValidator

__all__ = [
    "QualityAssessment",
    "QualityRule",
    "QualityValidator",
    "RefinementController",
    "RuleResult",
    "Severity",
    "ValidationContext",
    "classify_trend",
]
