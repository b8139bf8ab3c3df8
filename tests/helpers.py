"""Fakes and canned responses shared by the sub-agent pipeline tests."""

import asyncio
import json
from typing import Any

from src.api_client import ProviderResponse
from src.types import ChatMessage, TokenUsage, ToolSpec


class ScriptedProvider:
    """Provider fake that replays canned responses and records every call."""

    def __init__(self, responses: list[Any], model: str = "fake-model", delay: float = 0.0):
        self.model = model
        self.responses = list(responses)
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def send(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        tools: list[ToolSpec] | None = None,
    ) -> ProviderResponse:
        self.calls.append({
            "messages": [m.copy() for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "tools": tools,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        # The last response repeats once the script runs out
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return ProviderResponse(text=item, usage=TokenUsage(100, 50), model=self.model)
        return item


class RecordingToolExecutor:
    """Tool executor fake that records calls in order."""

    def __init__(self, tools: list[str] | None = None):
        self.tools = tools or ["read_file"]
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def execute(self, tool_name: str, args: dict[str, Any]) -> str:
        self.calls.append((tool_name, args))
        return json.dumps({"success": True, "tool": tool_name, "args": args})

    def available_tools(self) -> list[ToolSpec]:
        return [ToolSpec(name=name, description=f"{name} tool") for name in self.tools]


class RecordingMemorySink:
    """Memory sink fake."""

    def __init__(self):
        self.submissions: list[tuple[str, str, list]] = []

    def submit(self, session_id, role, operations) -> None:
        self.submissions.append((session_id, role, operations))


def response_json(
    analysis: str,
    recommendations: list[str] | None = None,
    documents: list[str] | None = None,
    memory_operations: list[dict] | None = None,
    status: str = "complete",
    confidence: str = "high",
    processing_time: str = "1200ms",
) -> str:
    return json.dumps({
        "deliverables": {
            "analysis": analysis,
            "recommendations": recommendations or [],
            "documents": documents or [],
        },
        "memory_operations": memory_operations or [],
        "metadata": {
            "task_completion_status": status,
            "processing_time": processing_time,
            "confidence_level": confidence,
        },
    })


GOOD_ANALYSIS = (
    "Review of the billing module. The invoice generation path reads customer "
    "records, applies discounts and writes ledger entries in one transaction. "
    "Discount rules are evaluated twice per invoice, once during preview and once "
    "during commit, which doubles the database load during month-end runs. The "
    "ledger writer retries on deadlock but does not cap attempts, so a stuck "
    "lock can hold a worker indefinitely. Currency rounding happens before tax "
    "is applied, which produces one-cent drift on multi-line invoices. Overall "
    "the module is sound but these three issues deserve prompt attention."
)

GOOD_RESPONSE = response_json(
    GOOD_ANALYSIS,
    recommendations=[
        "Cache evaluated discount rules between preview and commit in the billing module",
        "Cap ledger deadlock retries at five attempts with jittered backoff",
        "Apply tax before currency rounding on multi-line invoices",
    ],
    documents=["billing-review.md"],
    memory_operations=[{"operation": "create_entities", "data": {"entities": [{"name": "BillingModule"}]}}],
)

WEAK_RESPONSE = response_json(
    "Review of the billing module: mostly fine.",
    recommendations=["Add tests to the billing module"],
    status="partial",
    confidence="medium",
)

BILLING_TASK = "Review the billing module"
