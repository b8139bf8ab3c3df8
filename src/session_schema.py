"""
Session schema models.

Pydantic models for the JSON records kept under the session store root.
"""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, Field


class QualityTrend(str, Enum):
    """Direction of recent quality scores."""

    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class SessionRecord(BaseModel):
    """Bookkeeping for one task lineage. Holds no task content."""

    session_id: str
    is_sub_agent: bool = False
    current_depth: int = Field(default=0, ge=0)
    parent_session_id: str | None = None
    total_calls: int = 0
    per_role_calls: dict[str, int] = Field(default_factory=dict)
    # task fingerprint -> refinement count
    refinement_counts: dict[str, int] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    last_activity: float = Field(default_factory=time.time)
    completed_at: float | None = None

    def touch(self) -> None:
        self.last_activity = time.time()

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_activity

    @property
    def total_refinements(self) -> int:
        return sum(self.refinement_counts.values())


class RefinementLineage(BaseModel):
    """Refinement history for one (session, role, task fingerprint)."""

    session_id: str
    role: str
    fingerprint: str
    attempt_number: int = 0
    previous_scores: list[int] = Field(default_factory=list)
    last_refinement_time: float = Field(default_factory=time.time)
    refinement_reason: str = ""
    quality_trend: QualityTrend = QualityTrend.STABLE

    @property
    def key(self) -> str:
        return lineage_key(self.session_id, self.role, self.fingerprint)


def lineage_key(session_id: str, role: str, fingerprint: str) -> str:
    """Filesystem-safe key for a refinement lineage."""
    slug = "".join(ch if ch.isalnum() else "-" for ch in role.lower()).strip("-") or "role"
    return f"{session_id}__{slug}__{fingerprint}"


__all__ = [
    "QualityTrend",
    "SessionRecord",
    "RefinementLineage",
    "lineage_key",
]
