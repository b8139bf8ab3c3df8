"""
Sub-agent orchestration: admission, invocation, scoring and refinement.

One spawn runs:

    admit -> compress -> (record_call -> attempt -> normalize -> validate
    -> should_refine?)* -> deliver memory operations -> complete

Admission errors and unknown roles are raised to the caller. Provider
errors and timeouts come back as a failed NormalizedResult.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .agents.invocation import AttemptOutcome, InvocationPipeline
from .agents.presets import default_role_catalog, policy_for
from .api_client import create_provider
from .config import SubAgentConfig, default_config
from .context.window import BoundedContext, ContextWindowManager
from .errors import AdmissionError, ParallelLimitExceeded, SubAgentError
from .quality.refinement import RefinementController
from .quality.validator import QualityAssessment, QualityValidator
from .response_parser import ResponseNormalizer
from .session_manager import SessionStore, task_fingerprint
from .types import ChatMessage, NormalizedResult, ParseStage, TokenUsage, Urgency

if TYPE_CHECKING:
    from .interfaces import Corrector, MemorySink, Provider, RoleCatalog, ToolExecutor

logger = logging.getLogger(__name__)

URGENCY_TIMEOUT_SECONDS = {
    Urgency.CRITICAL: 30.0,
    Urgency.HIGH: 60.0,
    Urgency.MEDIUM: 120.0,
    Urgency.LOW: 300.0,
}

# USD per 1k tokens
COST_PER_1K_TOKENS = {
    "gpt-4": 0.03,
    "gpt-3.5-turbo": 0.002,
    "claude-3-opus": 0.015,
    "claude-3-sonnet": 0.003,
}
DEFAULT_COST_PER_1K_TOKENS = 0.002


def calculate_cost(tokens: int, model: str) -> float:
    """Rough spend estimate for a token count."""
    rate = COST_PER_1K_TOKENS.get(model, DEFAULT_COST_PER_1K_TOKENS)
    return tokens / 1000 * rate


@dataclass
class SpawnRequest:
    """One sub-agent task."""

    role: str
    task: str
    context: str = ""
    expected_deliverables: str = ""
    urgency: Urgency = Urgency.MEDIUM
    max_budget_tokens: int | None = None
    timeout_ms: int | None = None
    parent_session_id: str | None = None


@dataclass
class UsageMetadata:
    """Cost and observability data for one spawn."""

    session_id: str
    tokens_used: int = 0
    time_elapsed_ms: float = 0.0
    cost: float = 0.0
    model: str = ""
    quality_score: int = 0
    attempts: int = 0
    refinements: int = 0
    parse_stage: ParseStage = ParseStage.HEURISTIC
    compression_ratio: float = 1.0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tokens_used": self.tokens_used,
            "time_elapsed_ms": round(self.time_elapsed_ms, 1),
            "cost": round(self.cost, 6),
            "model": self.model,
            "quality_score": self.quality_score,
            "attempts": self.attempts,
            "refinements": self.refinements,
            "parse_stage": self.parse_stage.value,
            "compression_ratio": round(self.compression_ratio, 4),
            "warnings": list(self.warnings),
        }


@dataclass
class SpawnResult:
    """Result, assessment and usage of one spawn."""

    result: NormalizedResult
    assessment: QualityAssessment | None
    usage: UsageMetadata
    error: str | None = None
    exception: SubAgentError | None = field(default=None, repr=False, compare=False)

    @property
    def error_type(self) -> str | None:
        return type(self.exception).__name__ if self.exception is not None else None

    @property
    def admission_refused(self) -> bool:
        return isinstance(self.exception, AdmissionError)

    def raise_for_error(self) -> None:
        """Re-raise the error captured for this request, if any."""
        if self.exception is not None:
            raise self.exception

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.result.to_dict(),
            "quality": self.assessment.to_dict() if self.assessment else None,
            "usage": self.usage.to_dict(),
            "error": self.error,
            "error_type": self.error_type,
        }


class SubAgentOrchestrator:
    """
    Spawns bounded, quality-checked sub-agent invocations.

    Example:
        orchestrator = SubAgentOrchestrator(provider=OpenAIProvider("gpt-4o-mini"))
        spawned = await orchestrator.spawn_agent(
            role="Security Engineer",
            task="Review the session token handling",
            context=background,
        )
        print(spawned.result.deliverables.analysis, spawned.assessment.overall_score)
    """

    def __init__(
        self,
        provider: "Provider | None" = None,
        config: SubAgentConfig | None = None,
        store: SessionStore | None = None,
        catalog: "RoleCatalog | None" = None,
        tool_executor: "ToolExecutor | None" = None,
        memory_sink: "MemorySink | None" = None,
        corrector: "Corrector | None" = None,
        validator: QualityValidator | None = None,
    ):
        """
        Initialize orchestrator.

        Args:
            provider: LLM provider (created from config.models if None)
            config: Configuration (uses default if None)
            store: Session store (created under config.store.root if None)
            catalog: Role definitions (built-in presets if None)
            tool_executor: Executes tool calls requested by the model
            memory_sink: Receives memory operations of the final result
            corrector: Optional JSON corrector for unparseable responses
            validator: Quality validator (default rule set if None)
        """
        self.config = config or default_config
        self.provider = provider or create_provider(self.config.models, sub_agent=True)
        self.store = store or SessionStore(self.config.store.root, self.config.limits)
        self.catalog = catalog or default_role_catalog()
        self.memory_sink = memory_sink
        self.corrector = corrector

        self.window = ContextWindowManager(self.config.context)
        self.pipeline = InvocationPipeline(
            self.provider,
            tool_executor,
            window=self.window,
            max_tokens=self.config.models.max_tokens,
            temperature=self.config.models.temperature,
            max_tool_rounds=self.config.limits.max_tool_rounds,
        )
        self.normalizer = ResponseNormalizer(self.config.quality.max_correction_attempts)
        self.validator = validator or QualityValidator(default_threshold=self.config.quality.threshold)
        self.refinement = RefinementController(self.store, self.config.quality)

    async def spawn_agent(
        self,
        role: str,
        task: str,
        context: str = "",
        expected_deliverables: str = "",
        urgency: Urgency | str = Urgency.MEDIUM,
        max_budget_tokens: int | None = None,
        timeout_ms: int | None = None,
        parent_session_id: str | None = None,
    ) -> SpawnResult:
        """
        Run one sub-agent task to a scored result.

        Raises:
            RoleNotFound: Role is not in the catalog
            AdmissionError: Depth, call budget or spawn rules refused the task
        """
        request = SpawnRequest(
            role=role,
            task=task,
            context=context,
            expected_deliverables=expected_deliverables,
            urgency=Urgency(urgency),
            max_budget_tokens=max_budget_tokens,
            timeout_ms=timeout_ms,
            parent_session_id=parent_session_id,
        )
        return await self._run(request)

    async def spawn_agents_parallel(self, requests: list[SpawnRequest]) -> list[SpawnResult]:
        """
        Run several tasks concurrently, results in request order.

        Per-request errors come back as failed results carrying the error;
        admission refusals are flagged and can be re-raised with
        SpawnResult.raise_for_error().

        Raises:
            ParallelLimitExceeded: More requests than max_parallel_agents
        """
        if not self.store.admit_parallel(len(requests)):
            raise ParallelLimitExceeded(
                f"{len(requests)} agents requested, limit is {self.store.limits.max_parallel_agents}",
                limit=self.store.limits.max_parallel_agents,
            )
        logger.info(f"Spawning {len(requests)} agents in parallel")
        return list(await asyncio.gather(*(self._run_captured(r) for r in requests)))

    def spawn_agent_sync(self, role: str, task: str, **kwargs: Any) -> SpawnResult:
        """Blocking wrapper around spawn_agent() for callers without a loop."""
        return asyncio.run(self.spawn_agent(role, task, **kwargs))

    async def _run_captured(self, request: SpawnRequest) -> SpawnResult:
        try:
            return await self._run(request)
        except SubAgentError as e:
            if isinstance(e, AdmissionError):
                logger.error(f"Parallel spawn for {request.role} refused: {type(e).__name__}: {e}")
            else:
                logger.warning(f"Parallel spawn for {request.role} failed: {e}")
            return SpawnResult(
                result=NormalizedResult.failure(request.role, str(e)),
                assessment=None,
                usage=UsageMetadata(session_id=request.parent_session_id or ""),
                error=str(e),
                exception=e,
            )

    async def _run(self, request: SpawnRequest) -> SpawnResult:
        start = time.monotonic()
        role_def = self.catalog.get_role(request.role)
        # Store writes touch disk; keep them off the event loop
        session_id = await asyncio.to_thread(self.store.admit, request.parent_session_id)
        # Calls and refinements count against the spawning lineage
        budget_session = request.parent_session_id or session_id

        try:
            bounded = self._bounded_context(request, role_def.domain_requirements)
            conversation = self.pipeline.build_conversation(role_def, bounded)
            fingerprint = task_fingerprint(request.task, request.context, request.role)
            validation_context = self.validator.context_for(
                request.role, request.task, request.expected_deliverables
            )
            timeout = self._timeout_seconds(request)

            usage = TokenUsage()
            model = ""
            attempts = refinements = 0
            warnings = list(bounded.warnings)
            best: tuple[NormalizedResult, QualityAssessment] | None = None

            while True:
                await asyncio.to_thread(self.store.record_call, budget_session, request.role)
                outcome = await self.pipeline.run_attempt(conversation, timeout)
                attempts += 1
                usage = usage + outcome.usage
                model = outcome.model or model

                result = await self._result_for(outcome, request.role)
                assessment = self.validator.validate(result, validation_context)
                await asyncio.to_thread(
                    self.refinement.record_score,
                    budget_session,
                    request.role,
                    fingerprint,
                    assessment.overall_score,
                )
                if best is None or assessment.overall_score > best[1].overall_score:
                    best = (result, assessment)

                if not outcome.completed:
                    warnings.append(outcome.error or f"attempt ended in state {outcome.state.value}")
                    break
                if not self.refinement.should_refine(assessment, budget_session, fingerprint):
                    break

                await asyncio.to_thread(
                    self.refinement.begin_refinement,
                    budget_session,
                    request.role,
                    fingerprint,
                    reason="; ".join(assessment.refinement_suggestions[:3]),
                )
                refinements += 1
                conversation.append(ChatMessage.user(self.refinement.build_prompt(assessment, request.task)))

            result, assessment = best
            self._deliver_memory(session_id, request.role, result)
        finally:
            await asyncio.to_thread(self.store.complete, session_id)
            if request.parent_session_id is None:
                self.refinement.release(session_id)

        elapsed_ms = (time.monotonic() - start) * 1000
        model = model or getattr(self.provider, "model", "")
        metadata = UsageMetadata(
            session_id=session_id,
            tokens_used=usage.total,
            time_elapsed_ms=elapsed_ms,
            cost=calculate_cost(usage.total, model),
            model=model,
            quality_score=assessment.overall_score,
            attempts=attempts,
            refinements=refinements,
            parse_stage=result.parse_stage,
            compression_ratio=bounded.compression_ratio,
            warnings=warnings,
        )
        logger.info(
            f"Spawn {session_id} for {request.role} finished: score={assessment.overall_score} "
            f"status={result.status.value} attempts={attempts} tokens={usage.total}"
        )
        return SpawnResult(result=result, assessment=assessment, usage=metadata)

    def _bounded_context(self, request: SpawnRequest, domain_requirements: list[str]) -> BoundedContext:
        if request.max_budget_tokens:
            budget = request.max_budget_tokens
        elif request.urgency == Urgency.CRITICAL:
            budget = self.config.context.critical_budget_tokens
        else:
            budget = self.config.context.default_budget_tokens
        requirements = domain_requirements or list(policy_for(request.role).domain_requirements)
        return self.window.compress(
            request.task,
            request.context,
            request.expected_deliverables,
            budget=budget,
            domain_requirements=requirements,
        )

    def _timeout_seconds(self, request: SpawnRequest) -> float:
        if request.timeout_ms:
            return request.timeout_ms / 1000
        return URGENCY_TIMEOUT_SECONDS[request.urgency]

    async def _result_for(self, outcome: AttemptOutcome, role: str) -> NormalizedResult:
        processing_time = f"{max(1, round(outcome.elapsed_ms))}ms"
        if not outcome.completed:
            return NormalizedResult.failure(role, outcome.error or "invocation failed", processing_time)
        result = await self.normalizer.normalize_with_correction(outcome.final_text, role, self.corrector)
        result.metadata.processing_time = processing_time
        return result

    def _deliver_memory(self, session_id: str, role: str, result: NormalizedResult) -> None:
        if self.memory_sink is None or not result.memory_operations:
            return
        try:
            self.memory_sink.submit(session_id, role, list(result.memory_operations))
        except Exception as e:
            logger.warning(f"Memory sink rejected {len(result.memory_operations)} operations from {role}: {e}")


__all__ = [
    "SpawnRequest",
    "SpawnResult",
    "UsageMetadata",
    "SubAgentOrchestrator",
    "calculate_cost",
]
