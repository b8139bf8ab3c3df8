"""
Invocation pipeline: drives one attempt to a final provider answer.

States per attempt:

    BUILDING -> CALLING -> (TOOL_EXECUTING -> CALLING)* -> COMPLETED
                                                        | TIMED_OUT
                                                        | PROVIDER_ERROR

Tool calls within an attempt run strictly one after another. The whole
attempt runs under a wall-clock deadline; a timed-out attempt leaves the
conversation record untouched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..context.window import BoundedContext, ContextWindowManager
from ..errors import ProviderError
from ..interfaces import NullToolExecutor, RoleDefinition
from ..response_parser import RESPONSE_FORMAT
from ..types import ChatMessage, ConversationRecord, TokenUsage, ToolCall

if TYPE_CHECKING:
    from ..interfaces import Provider, ToolExecutor

logger = logging.getLogger(__name__)

TOOL_BUDGET_EXHAUSTED = (
    "Tool call limit reached for this attempt. Do not call more tools; "
    "give your final answer now using the information gathered so far."
)


class AttemptState(str, Enum):
    """Invocation attempt state."""

    BUILDING = "building"
    CALLING = "calling"
    TOOL_EXECUTING = "tool_executing"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    PROVIDER_ERROR = "provider_error"


@dataclass
class AttemptOutcome:
    """Result of one pipeline run."""

    state: AttemptState = AttemptState.BUILDING
    final_text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    elapsed_ms: float = 0.0
    provider_calls: int = 0
    tool_rounds: int = 0
    tool_calls: int = 0
    model: str = ""
    error: str | None = None
    transitions: list[AttemptState] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.state == AttemptState.COMPLETED

    def move(self, state: AttemptState) -> None:
        self.state = state
        self.transitions.append(state)


class InvocationPipeline:
    """
    Runs the provider call / tool call loop for one attempt.

    Example:
        pipeline = InvocationPipeline(provider, tool_executor)
        conversation = pipeline.build_conversation(role, bounded_context)
        outcome = await pipeline.run_attempt(conversation, timeout_seconds=120)
    """

    def __init__(
        self,
        provider: "Provider",
        tool_executor: "ToolExecutor | None" = None,
        window: ContextWindowManager | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.3,
        max_tool_rounds: int | None = None,
    ):
        """
        Args:
            provider: LLM provider adapter
            tool_executor: Executes tool calls (default: no tools)
            window: Prunes history before each provider call
            max_tokens: Completion token limit per call
            temperature: Sampling temperature
            max_tool_rounds: Optional cap on tool rounds; None relies on the timeout
        """
        self.provider = provider
        self.tool_executor = tool_executor or NullToolExecutor()
        self.window = window or ContextWindowManager()
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_tool_rounds = max_tool_rounds

    def build_conversation(
        self,
        role: RoleDefinition,
        bounded: BoundedContext,
    ) -> ConversationRecord:
        """Assemble the initial system and user messages."""
        system = f"{role.system_prompt.strip()}\n\n{RESPONSE_FORMAT}"
        return ConversationRecord([ChatMessage.system(system), ChatMessage.user(bounded.text)])

    async def run_attempt(
        self,
        conversation: ConversationRecord,
        timeout_seconds: float,
    ) -> AttemptOutcome:
        """
        Run one attempt against a working copy of the conversation.

        On COMPLETED the new assistant and tool messages are appended to
        `conversation`. On TIMED_OUT or PROVIDER_ERROR it is left as it was.
        """
        outcome = AttemptOutcome()
        outcome.move(AttemptState.BUILDING)
        working = conversation.fork()
        start = time.monotonic()

        try:
            await asyncio.wait_for(self._loop(working, outcome), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            outcome.move(AttemptState.TIMED_OUT)
            outcome.error = f"Operation timed out after {timeout_seconds:g}s"
            logger.warning(f"Attempt timed out after {timeout_seconds:g}s ({outcome.provider_calls} provider calls)")
        except ProviderError as e:
            outcome.move(AttemptState.PROVIDER_ERROR)
            outcome.error = str(e)
            logger.warning(f"Attempt failed with provider error: {e}")
        finally:
            outcome.elapsed_ms = (time.monotonic() - start) * 1000

        if outcome.completed:
            conversation.extend(list(working.messages[len(conversation):]))
            logger.info(
                f"Attempt completed in {outcome.elapsed_ms:.0f}ms "
                f"({outcome.provider_calls} calls, {outcome.tool_rounds} tool rounds)"
            )
        return outcome

    async def _loop(self, working: ConversationRecord, outcome: AttemptOutcome) -> None:
        tools = self.tool_executor.available_tools()

        while True:
            cap_reached = self.max_tool_rounds is not None and outcome.tool_rounds >= self.max_tool_rounds
            if cap_reached and working.last is not None and working.last.content != TOOL_BUDGET_EXHAUSTED:
                working.append(ChatMessage.user(TOOL_BUDGET_EXHAUSTED))

            outcome.move(AttemptState.CALLING)
            messages = self.window.prune_history(working.derived_copy())
            response = await self.provider.send(
                messages,
                self.max_tokens,
                self.temperature,
                tools=None if cap_reached else (tools or None),
            )
            outcome.provider_calls += 1
            outcome.usage = outcome.usage + response.usage
            outcome.model = response.model or outcome.model

            if not response.has_tool_calls or cap_reached:
                working.append(ChatMessage.assistant(response.text))
                outcome.final_text = response.text
                outcome.move(AttemptState.COMPLETED)
                return

            outcome.move(AttemptState.TOOL_EXECUTING)
            working.append(ChatMessage.assistant(response.text, response.tool_calls))
            for call in response.tool_calls:
                result = await self._execute(call)
                working.append(ChatMessage.tool(result, tool_call_id=call.id, name=call.name))
                outcome.tool_calls += 1
            outcome.tool_rounds += 1
            logger.debug(f"Tool round {outcome.tool_rounds}: {[c.name for c in response.tool_calls]}")

    async def _execute(self, call: ToolCall) -> str:
        try:
            args = call.parsed_arguments()
        except ValueError as e:
            return f"Error parsing tool arguments: {e}"
        try:
            return await asyncio.to_thread(self.tool_executor.execute, call.name, args)
        except Exception as e:
            # Executors should encode failures themselves; keep the loop alive if one does not
            logger.warning(f"Tool executor raised for {call.name}: {e}")
            return f"Error executing tool {call.name}: {e}"


__all__ = [
    "AttemptState",
    "AttemptOutcome",
    "InvocationPipeline",
]
