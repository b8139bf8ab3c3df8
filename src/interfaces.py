"""
Collaborator interfaces consumed by the pipeline.

The core owns admission, context, parsing and scoring. Providers, tools,
role definitions and the knowledge store are supplied from outside
through these narrow contracts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .errors import RoleNotFound

if TYPE_CHECKING:
    from .api_client import ProviderResponse
    from .types import ChatMessage, MemoryOperation, ToolSpec


@dataclass
class RoleDefinition:
    """Read-only role entry: system prompt and domain requirement keywords."""

    name: str
    system_prompt: str
    domain_requirements: list[str] = field(default_factory=list)


@runtime_checkable
class Provider(Protocol):
    """
    LLM provider abstraction.

    Must report token usage when available; zero usage means unknown.
    Transport failures raise ProviderError.
    """

    model: str

    async def send(
        self,
        messages: list["ChatMessage"],
        max_tokens: int,
        temperature: float,
        tools: list["ToolSpec"] | None = None,
    ) -> "ProviderResponse":
        ...


@runtime_checkable
class ToolExecutor(Protocol):
    """
    Executes tool calls for the agent.

    execute() never raises: failures come back as result text so they can
    be appended to the conversation like any other tool result.
    """

    def execute(self, tool_name: str, args: dict[str, Any]) -> str:
        ...

    def available_tools(self) -> list["ToolSpec"]:
        ...


class RoleCatalog(Protocol):
    """Read-only lookup of role definitions."""

    def get_role(self, name: str) -> RoleDefinition:
        """Raises RoleNotFound for unknown roles."""
        ...


class MemorySink(Protocol):
    """Durable destination for proposed memory operations."""

    def submit(self, session_id: str, role: str, operations: list["MemoryOperation"]) -> None:
        ...


class Corrector(Protocol):
    """
    Strategy for turning malformed model output into parseable text.

    Returns replacement text, or None when it has nothing to offer.
    """

    async def correct(self, raw_text: str, problem: str) -> str | None:
        ...


class InMemoryRoleCatalog:
    """Dictionary-backed RoleCatalog."""

    def __init__(self, roles: list[RoleDefinition] | None = None):
        self._roles: dict[str, RoleDefinition] = {}
        for role in roles or []:
            self.register(role)

    def register(self, role: RoleDefinition) -> None:
        self._roles[role.name] = role

    def get_role(self, name: str) -> RoleDefinition:
        try:
            return self._roles[name]
        except KeyError:
            raise RoleNotFound(name) from None

    def names(self) -> list[str]:
        return sorted(self._roles)


class NullToolExecutor:
    """ToolExecutor with no tools; every call reports the tool as unknown."""

    def execute(self, tool_name: str, args: dict[str, Any]) -> str:
        return f"Error executing tool {tool_name}: no tools are available"

    def available_tools(self) -> list["ToolSpec"]:
        return []


__all__ = [
    "RoleDefinition",
    "Provider",
    "ToolExecutor",
    "RoleCatalog",
    "MemorySink",
    "Corrector",
    "InMemoryRoleCatalog",
    "NullToolExecutor",
]
