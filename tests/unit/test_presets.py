"""Tests for per-role quality policies and the preset role catalog."""

import pytest

from src.agents import (
    DEFAULT_ROLE,
    ROLE_POLICIES,
    TECHNICAL_ROLES,
    default_role_catalog,
    policy_for,
)
from src.errors import RoleNotFound


class TestRolePolicies:
    """Test suite for ROLE_POLICIES and policy_for."""

    def test_security_engineer_policy(self):
        """Security Engineer has the strictest threshold and code rules."""
        policy = policy_for("Security Engineer")

        assert policy.quality_threshold == 80
        assert policy.max_refinement_attempts == 3
        assert policy.technical is True
        assert policy.expects_code is True

    @pytest.mark.parametrize("role", ["Software Architect", "Database Architect", "Test Engineer"])
    def test_architect_and_test_thresholds(self, role):
        """Architects and test engineers pass at 75."""
        assert policy_for(role).quality_threshold == 75

    def test_architect_is_not_technical(self):
        """Software Architect is judged without file and code rules."""
        policy = policy_for("Software Architect")
        assert policy.technical is False
        assert policy.expects_code is False

    def test_test_engineer_does_not_expect_code(self):
        """Test Engineer gets file-path rules but not the code-snippet rule."""
        policy = policy_for("Test Engineer")
        assert policy.technical is True
        assert policy.expects_code is False

    def test_unknown_role_gets_default_policy(self):
        """Unlisted roles use the default policy with the given threshold."""
        policy = policy_for("Analyst", default_threshold=65)

        assert policy.name == DEFAULT_ROLE
        assert policy.quality_threshold == 65
        assert policy.max_refinement_attempts == 2
        assert policy.technical is False
        assert policy.domain_requirements

    def test_technical_roles(self):
        """TECHNICAL_ROLES lists every role with technical rules."""
        assert TECHNICAL_ROLES == {
            "Security Engineer",
            "Database Architect",
            "Test Engineer",
            "DevOps Engineer",
            "Software Engineer",
        }

    def test_every_policy_has_domain_requirements(self):
        """Each preset role names what its context must carry."""
        for name, policy in ROLE_POLICIES.items():
            assert policy.name == name
            assert len(policy.domain_requirements) == 4


class TestDefaultRoleCatalog:
    """Test suite for default_role_catalog."""

    def test_contains_every_preset(self):
        """The catalog has one definition per preset role."""
        catalog = default_role_catalog()
        assert catalog.names() == sorted(ROLE_POLICIES)

    def test_definitions_carry_requirements(self):
        """Role definitions copy the policy's domain requirements."""
        role = default_role_catalog().get_role("Database Architect")

        assert role.system_prompt.startswith("You are a database architect.")
        assert role.domain_requirements == list(ROLE_POLICIES["Database Architect"].domain_requirements)

    def test_unknown_role_raises(self):
        """Lookups of unknown roles raise RoleNotFound."""
        with pytest.raises(RoleNotFound) as exc_info:
            default_role_catalog().get_role("Wizard")
        assert exc_info.value.role == "Wizard"
