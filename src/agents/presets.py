"""Per-role quality policies and pre-configured role definitions."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..interfaces import InMemoryRoleCatalog, RoleDefinition

DEFAULT_ROLE = "default"


@dataclass(frozen=True)
class RolePolicy:
    """Quality threshold, refinement ceiling and rule activation for a role."""

    name: str
    quality_threshold: int = 70
    max_refinement_attempts: int = 2
    # Enables the file-path and analysis-depth rules
    technical: bool = False
    # Enables the code-snippet rule
    expects_code: bool = False
    domain_requirements: tuple[str, ...] = field(default_factory=tuple)


ROLE_POLICIES: dict[str, RolePolicy] = {
    "Security Engineer": RolePolicy(
        name="Security Engineer",
        quality_threshold=80,
        max_refinement_attempts=3,
        technical=True,
        expects_code=True,
        domain_requirements=(
            "Authentication patterns and security requirements",
            "Threat models and vulnerability assessments",
            "Security compliance requirements",
            "Encryption and data protection standards",
        ),
    ),
    "Software Architect": RolePolicy(
        name="Software Architect",
        quality_threshold=75,
        max_refinement_attempts=3,
        domain_requirements=(
            "Architecture patterns and component boundaries",
            "Scalability and availability requirements",
            "Integration requirements and dependencies",
            "Technology constraints and trade-offs",
        ),
    ),
    "Database Architect": RolePolicy(
        name="Database Architect",
        quality_threshold=75,
        max_refinement_attempts=2,
        technical=True,
        expects_code=True,
        domain_requirements=(
            "Data models and schema requirements",
            "Performance requirements and query patterns",
            "Consistency patterns and transaction requirements",
            "Data volume and scaling considerations",
        ),
    ),
    "Test Engineer": RolePolicy(
        name="Test Engineer",
        quality_threshold=75,
        max_refinement_attempts=2,
        technical=True,
        domain_requirements=(
            "Quality requirements and acceptance criteria",
            "Coverage expectations and testing strategies",
            "Test environments and data requirements",
            "Risk assessment and edge cases",
        ),
    ),
    "DevOps Engineer": RolePolicy(
        name="DevOps Engineer",
        technical=True,
        expects_code=True,
        domain_requirements=(
            "Deployment context and infrastructure constraints",
            "Operational requirements and monitoring needs",
            "CI/CD pipeline configuration",
            "Resource limitations and scaling requirements",
        ),
    ),
    "Software Engineer": RolePolicy(
        name="Software Engineer",
        technical=True,
        expects_code=True,
        domain_requirements=(
            "Code architecture and design patterns",
            "Technical constraints and requirements",
            "Performance and scalability considerations",
            "Integration requirements and dependencies",
        ),
    ),
}

DEFAULT_DOMAIN_REQUIREMENTS: tuple[str, ...] = (
    "Domain-specific constraints and requirements",
    "Quality standards and best practices",
    "Integration requirements",
    "Performance considerations",
)

TECHNICAL_ROLES = frozenset(name for name, policy in ROLE_POLICIES.items() if policy.technical)


def policy_for(role: str, default_threshold: int = 70) -> RolePolicy:
    """Policy for a role, falling back to the default policy."""
    policy = ROLE_POLICIES.get(role)
    if policy is not None:
        return policy
    return RolePolicy(
        name=DEFAULT_ROLE,
        quality_threshold=default_threshold,
        domain_requirements=DEFAULT_DOMAIN_REQUIREMENTS,
    )


_SYSTEM_PROMPTS = {
    "Security Engineer": "You are a security engineer. Focus on vulnerabilities, attack vectors, and mitigations, citing the exact files and code involved.",
    "Software Architect": "You are a software architect. Focus on structure, component boundaries, trade-offs and long-term maintainability.",
    "Database Architect": "You are a database architect. Focus on schemas, query patterns, indexing, consistency and data growth.",
    "Test Engineer": "You are a test engineer. Focus on coverage gaps, edge cases, test strategy and reproducible failures.",
    "DevOps Engineer": "You are a DevOps engineer. Focus on deployment, infrastructure, observability and operational risk.",
    "Software Engineer": "You are a software engineer. Focus on correctness, clear implementation steps and concrete code changes.",
}


def default_role_catalog() -> InMemoryRoleCatalog:
    """Catalog with one definition per preset role."""
    return InMemoryRoleCatalog([
        RoleDefinition(
            name=name,
            system_prompt=_SYSTEM_PROMPTS[name],
            domain_requirements=list(ROLE_POLICIES[name].domain_requirements),
        )
        for name in ROLE_POLICIES
    ])


__all__ = [
    "DEFAULT_ROLE",
    "RolePolicy",
    "ROLE_POLICIES",
    "DEFAULT_DOMAIN_REQUIREMENTS",
    "TECHNICAL_ROLES",
    "policy_for",
    "default_role_catalog",
]
