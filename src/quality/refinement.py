"""
Refinement controller: decides whether to ask again, and how.

Termination is guaranteed by three independent ceilings: the role's
refinement attempt limit, the session call budget, and a declining
quality trend over the recent scores.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from ..agents.presets import policy_for
from ..config import QualityConfig
from ..session_schema import QualityTrend, RefinementLineage, lineage_key
from .rules import Severity

if TYPE_CHECKING:
    from ..session_manager import SessionStore
    from .validator import QualityAssessment

logger = logging.getLogger(__name__)

WEAK_CATEGORY_SCORE = 70


def classify_trend(
    scores: list[int],
    window: int = 3,
    min_scores: int = 3,
    delta: int = 5,
) -> QualityTrend:
    """
    Direction of the last `window` scores.

    Compares the newest score in the window to the oldest. Fewer than
    `min_scores` scores are always stable.

    >>> classify_trend([40, 50, 45])
    <QualityTrend.STABLE: 'stable'>
    >>> classify_trend([40, 30, 20])
    <QualityTrend.DECLINING: 'declining'>
    """
    recent = scores[-window:]
    if len(recent) < max(2, min_scores):
        return QualityTrend.STABLE
    difference = recent[-1] - recent[0]
    if difference >= delta:
        return QualityTrend.IMPROVING
    if difference <= -delta:
        return QualityTrend.DECLINING
    return QualityTrend.STABLE


class RefinementController:
    """
    Bounded refine-until-good-enough loop control.

    Lineages are kept in memory and written through to the session store,
    one per (session, role, task fingerprint).

    Example:
        controller = RefinementController(store)
        controller.record_score(session_id, role, fingerprint, assessment.overall_score)
        if controller.should_refine(assessment, session_id, fingerprint):
            prompt = controller.build_prompt(assessment, task)
    """

    def __init__(self, store: "SessionStore", config: QualityConfig | None = None):
        self.store = store
        self.config = config or QualityConfig()
        self._lineages: dict[str, RefinementLineage] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lineage tracking
    # ------------------------------------------------------------------

    def lineage(self, session_id: str, role: str, fingerprint: str) -> RefinementLineage:
        """Current lineage, loaded from the store or started fresh."""
        key = lineage_key(session_id, role, fingerprint)
        with self._lock:
            lineage = self._lineages.get(key)
            if lineage is None:
                lineage = self.store.load_lineage(session_id, role, fingerprint) or RefinementLineage(
                    session_id=session_id,
                    role=role,
                    fingerprint=fingerprint,
                )
                self._lineages[key] = lineage
            return lineage

    def record_score(
        self,
        session_id: str,
        role: str,
        fingerprint: str,
        score: int,
        reason: str = "",
    ) -> RefinementLineage:
        """Append an attempt's score and reclassify the trend."""
        lineage = self.lineage(session_id, role, fingerprint)
        with self._lock:
            lineage.previous_scores.append(score)
            lineage.quality_trend = classify_trend(
                lineage.previous_scores,
                window=self.config.trend_window,
                min_scores=self.config.trend_min_scores,
                delta=self.config.trend_delta,
            )
            lineage.last_refinement_time = time.time()
            if reason:
                lineage.refinement_reason = reason
            snapshot = lineage.model_copy(deep=True)
        self.store.save_lineage(snapshot)
        logger.debug(
            f"Recorded score {score} for {role} in {session_id} "
            f"(trend={snapshot.quality_trend.value}, scores={snapshot.previous_scores})"
        )
        return snapshot

    def begin_refinement(self, session_id: str, role: str, fingerprint: str, reason: str = "") -> int:
        """
        Charge one refinement to the session and the lineage.

        Raises:
            RefinementBudgetExceeded: Session-wide ceiling for this task reached
        """
        count = self.store.record_refinement(session_id, fingerprint)
        lineage = self.lineage(session_id, role, fingerprint)
        with self._lock:
            lineage.attempt_number = count
            lineage.refinement_reason = reason
            lineage.last_refinement_time = time.time()
            snapshot = lineage.model_copy(deep=True)
        self.store.save_lineage(snapshot)
        logger.info(f"Refinement {count} started for {role} in {session_id}")
        return count

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def max_attempts(self, role: str) -> int:
        policy = policy_for(role, self.config.threshold)
        return min(policy.max_refinement_attempts, self.store.limits.max_refinement_iterations)

    def should_refine(self, assessment: "QualityAssessment", session_id: str, fingerprint: str) -> bool:
        """
        Whether another attempt is worth making.

        False when the result passed, has a critical rule failure, the
        role's attempt ceiling or the session call budget is used up, the
        trend is declining, or the validator sees nothing to improve.
        """
        role = assessment.role
        if assessment.passed:
            return False

        if any(not r.passed and r.severity == Severity.CRITICAL for r in assessment.rule_results):
            logger.warning(f"Critical issues for {role} in {session_id}, not refining: {assessment.critical_issues}")
            return False

        attempts = self.store.refinement_count(session_id, fingerprint)
        ceiling = self.max_attempts(role)
        if attempts >= ceiling:
            logger.info(f"Maximum refinement attempts reached for {role} in {session_id} ({attempts}/{ceiling})")
            return False

        if self.store.remaining_calls(session_id) <= 0:
            logger.info(f"No calls left in {session_id}, not refining")
            return False

        trend = self.lineage(session_id, role, fingerprint).quality_trend
        if trend == QualityTrend.DECLINING:
            logger.info(f"Quality declining for {role} in {session_id}, not refining")
            return False

        return assessment.can_refine

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(
        self,
        assessment: "QualityAssessment",
        task: str,
        quality_criteria: str = "",
    ) -> str:
        """Corrective user turn for the next attempt."""
        areas = _refinement_areas(assessment)
        feedback = _specific_feedback(assessment)

        sections = [
            "REFINEMENT REQUEST",
            f"Your previous response scored {assessment.overall_score}/100 "
            f"(threshold: {assessment.threshold}). Please refine your response "
            f"addressing the following areas:",
            "AREAS NEEDING IMPROVEMENT:\n" + _bullets(areas),
            "SPECIFIC FEEDBACK:\n" + _bullets(feedback),
        ]
        if assessment.refinement_suggestions:
            sections.append("REFINEMENT SUGGESTIONS:\n" + _bullets(assessment.refinement_suggestions))
        sections.append(f"ORIGINAL TASK:\n{task}")
        if quality_criteria:
            sections.append(f"QUALITY REQUIREMENTS:\n{quality_criteria}")
        sections.append(
            "Please provide a refined response that addresses these issues "
            "while maintaining the same JSON format structure."
        )
        return "\n\n".join(sections)

    # ------------------------------------------------------------------
    # Statistics and cleanup
    # ------------------------------------------------------------------

    def stats(self, session_id: str) -> dict[str, Any]:
        """Refinement totals, per-role breakdown, average improvement and success rate."""
        known = {lineage.key: lineage for lineage in self.store.list_lineages(session_id)}
        with self._lock:
            for key, lineage in self._lineages.items():
                if lineage.session_id == session_id:
                    known[key] = lineage.model_copy(deep=True)
        lineages = list(known.values())

        if not lineages:
            return {
                "total_refinements": 0,
                "role_breakdown": {},
                "average_improvement": 0.0,
                "success_rate": 0.0,
            }

        breakdown: dict[str, int] = {}
        total_improvement = 0
        improved = 0
        for lineage in lineages:
            breakdown[lineage.role] = breakdown.get(lineage.role, 0) + lineage.attempt_number
            if len(lineage.previous_scores) > 1:
                improvement = lineage.previous_scores[-1] - lineage.previous_scores[0]
                total_improvement += improvement
                if improvement > 0:
                    improved += 1

        return {
            "total_refinements": sum(breakdown.values()),
            "role_breakdown": breakdown,
            "average_improvement": total_improvement / len(lineages),
            "success_rate": improved / len(lineages),
        }

    def tracked_sessions(self) -> set[str]:
        """Sessions with lineages currently held in memory."""
        with self._lock:
            return {lineage.session_id for lineage in self._lineages.values()}

    def release(self, session_id: str) -> int:
        """
        Forget a finished session's in-memory lineages.

        Persisted copies are left in the store for stats() and cleanup().

        Returns:
            Number of lineages released
        """
        with self._lock:
            keys = [k for k, v in self._lineages.items() if v.session_id == session_id]
            for key in keys:
                del self._lineages[key]
        return len(keys)

    def cleanup(self, max_age_seconds: float | None = None) -> int:
        """
        Drop lineages not touched within max_age_seconds.

        Returns:
            Number of lineages removed
        """
        if max_age_seconds is None:
            max_age_seconds = self.config.refinement_state_max_age_hours * 3600
        cutoff = time.time() - max_age_seconds

        removed = 0
        with self._lock:
            for key in [k for k, v in self._lineages.items() if v.last_refinement_time < cutoff]:
                del self._lineages[key]
        for lineage in self.store.list_lineages():
            if lineage.last_refinement_time < cutoff:
                self.store.delete_lineage(lineage)
                removed += 1

        if removed:
            logger.info(f"Cleaned up {removed} stale refinement lineages")
        return removed


def _bullets(items: list[str]) -> str:
    return "\n".join(f"• {item}" for item in items) if items else "• (none)"


def _refinement_areas(assessment: "QualityAssessment") -> list[str]:
    areas = [
        f"{category} (score: {score}/100)"
        for category, score in assessment.categories.items()
        if score < WEAK_CATEGORY_SCORE
    ]
    for result in assessment.rule_results:
        if result.passed or result.severity == Severity.CRITICAL:
            continue
        if not any(area.startswith(result.category) for area in areas):
            areas.append(result.category)
    return areas


def _specific_feedback(assessment: "QualityAssessment") -> list[str]:
    feedback = [
        r.feedback for r in assessment.rule_results
        if not r.passed and r.feedback and r.severity != Severity.CRITICAL
    ]
    if assessment.overall_score < 50:
        feedback.append("Response needs significant improvement to meet quality standards")
    elif assessment.overall_score < assessment.threshold:
        feedback.append("Response is close to quality threshold - minor improvements needed")
    return feedback


__all__ = [
    "RefinementController",
    "classify_trend",
]
