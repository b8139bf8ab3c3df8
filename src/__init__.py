"""Sub-agent control: bounded, quality-checked LLM sub-agent invocation.

Layers:
- Session store: call, depth and refinement budgets per task lineage
- Context: token-budgeted compression and history pruning
- Agents: provider/tool-call loop per attempt
- Quality: rule-based scoring and refinement control
"""

__version__ = "0.1.0"

# Orchestration
from .orchestrator import SpawnRequest, SpawnResult, SubAgentOrchestrator, UsageMetadata, calculate_cost
from .agents import AttemptOutcome, AttemptState, InvocationPipeline, RolePolicy, policy_for
from .api_client import AnthropicProvider, OpenAIProvider, ProviderResponse, create_provider

# Bookkeeping
from .session_manager import SessionStore, task_fingerprint
from .session_schema import QualityTrend, RefinementLineage, SessionRecord

# Context and parsing
from .context import BoundedContext, ContextWindowManager
from .response_parser import ProviderCorrector, ResponseNormalizer

# Quality
from .quality import QualityAssessment, QualityValidator, RefinementController, classify_trend

# Types, contracts & config
from .types import ChatMessage, NormalizedResult, ToolCall, ToolSpec, Urgency
from .interfaces import InMemoryRoleCatalog, RoleDefinition
from .config import SubAgentConfig, default_config
from .errors import (
    AdmissionError,
    CallBudgetExceeded,
    DepthExceeded,
    ParallelLimitExceeded,
    ProviderError,
    RefinementBudgetExceeded,
    RoleNotFound,
    SubAgentCannotSpawn,
    SubAgentError,
)

__all__ = [
    # Orchestration
    "SubAgentOrchestrator",
    "SpawnRequest",
    "SpawnResult",
    "UsageMetadata",
    "calculate_cost",
    "InvocationPipeline",
    "AttemptState",
    "AttemptOutcome",
    "RolePolicy",
    "policy_for",
    "AnthropicProvider",
    "OpenAIProvider",
    "ProviderResponse",
    "create_provider",
    # Bookkeeping
    "SessionStore",
    "task_fingerprint",
    "SessionRecord",
    "RefinementLineage",
    "QualityTrend",
    # Context and parsing
    "ContextWindowManager",
    "BoundedContext",
    "ResponseNormalizer",
    "ProviderCorrector",
    # Quality
    "QualityValidator",
    "QualityAssessment",
    "RefinementController",
    "classify_trend",
    # Types, contracts & config
    "ChatMessage",
    "NormalizedResult",
    "ToolCall",
    "ToolSpec",
    "Urgency",
    "RoleDefinition",
    "InMemoryRoleCatalog",
    "SubAgentConfig",
    "default_config",
    # Errors
    "SubAgentError",
    "AdmissionError",
    "DepthExceeded",
    "CallBudgetExceeded",
    "RefinementBudgetExceeded",
    "SubAgentCannotSpawn",
    "ParallelLimitExceeded",
    "ProviderError",
    "RoleNotFound",
]
