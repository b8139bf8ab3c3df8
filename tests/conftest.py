"""Shared fixtures for the sub-agent pipeline tests."""

import tempfile
from pathlib import Path

import pytest

from src.config import LimitsConfig
from src.interfaces import InMemoryRoleCatalog, RoleDefinition
from src.session_manager import SessionStore


@pytest.fixture
def temp_store_dir():
    """Temporary session store root."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def limits():
    return LimitsConfig(max_total_calls=10, max_refinement_iterations=5, max_parallel_agents=3, max_depth=2)


@pytest.fixture
def store(temp_store_dir, limits):
    """SessionStore rooted in a temporary directory."""
    return SessionStore(temp_store_dir, limits)


@pytest.fixture
def catalog():
    return InMemoryRoleCatalog([
        RoleDefinition(name="Analyst", system_prompt="You are a careful analyst."),
        RoleDefinition(
            name="Security Engineer",
            system_prompt="You are a security engineer.",
            domain_requirements=["Authentication patterns and security requirements"],
        ),
    ])
