"""Agents layer: role presets and the per-attempt invocation pipeline."""

from .invocation import AttemptOutcome, AttemptState, InvocationPipeline
from .presets import (
    DEFAULT_ROLE,
    ROLE_POLICIES,
    TECHNICAL_ROLES,
    RolePolicy,
    default_role_catalog,
    policy_for,
)

__all__ = [
    "AttemptOutcome",
    "AttemptState",
    "InvocationPipeline",
    "DEFAULT_ROLE",
    "ROLE_POLICIES",
    "TECHNICAL_ROLES",
    "RolePolicy",
    "default_role_catalog",
    "policy_for",
]
