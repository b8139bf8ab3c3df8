"""
LLM provider adapters.

Supports:
- Anthropic (messages API, tool_use / tool_result blocks)
- OpenAI (chat completions, function tools), including compatible endpoints

Both adapters implement the Provider protocol: send() takes the
role-tagged conversation and returns text, tool calls and token usage.
SDK and transport failures are re-raised as ProviderError.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import anthropic
import httpx
import openai

from .config import ModelConfig
from .errors import ConfigError, ProviderError
from .types import ChatMessage, MessageRole, TokenUsage, ToolCall, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = httpx.Timeout(600.0, connect=10.0)


@dataclass
class ProviderResponse:
    """One provider reply."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    stop_reason: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def _is_recoverable(error: Exception) -> bool:
    if isinstance(error, (anthropic.RateLimitError, openai.RateLimitError)):
        return True
    if isinstance(error, (anthropic.APITimeoutError, openai.APITimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(error, (anthropic.APIConnectionError, openai.APIConnectionError, httpx.TransportError)):
        return True
    status = getattr(error, "status_code", None)
    return isinstance(status, int) and status >= 500


class BaseProvider(ABC):
    """Abstract base class for provider adapters."""

    name: str = "base"

    def __init__(self, model: str):
        self.model = model

    async def send(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        tools: list[ToolSpec] | None = None,
    ) -> ProviderResponse:
        try:
            return await self._send(messages, max_tokens, temperature, tools or [])
        except (anthropic.APIError, openai.APIError, httpx.HTTPError) as e:
            recoverable = _is_recoverable(e)
            logger.warning(f"{self.name} request failed (recoverable={recoverable}): {e}")
            raise ProviderError(str(e), recoverable=recoverable, provider=self.name) from e

    @abstractmethod
    async def _send(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        tools: list[ToolSpec],
    ) -> ProviderResponse:
        ...


class AnthropicProvider(BaseProvider):
    """Anthropic Claude API adapter."""

    name = "anthropic"

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: str | None = None,
        base_url: str | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        super().__init__(model)
        # Support both ANTHROPIC_API_KEY and ANTHROPIC_AUTH_TOKEN
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_AUTH_TOKEN")
        self.base_url = base_url or os.environ.get("ANTHROPIC_BASE_URL")
        self._client = client

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self.api_key:
                raise ProviderError(
                    "Anthropic API key required. Set ANTHROPIC_API_KEY or ANTHROPIC_AUTH_TOKEN.",
                    provider=self.name,
                )
            client_kwargs: dict[str, Any] = {"api_key": self.api_key, "timeout": DEFAULT_REQUEST_TIMEOUT}
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
            self._client = anthropic.AsyncAnthropic(**client_kwargs)
        return self._client

    @staticmethod
    def convert_messages(messages: list[ChatMessage]) -> tuple[str | None, list[dict[str, Any]]]:
        """Split out the system prompt and map turns to content blocks."""
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []

        for message in messages:
            if message.role == MessageRole.SYSTEM:
                system_parts.append(message.content)
                continue

            if message.role == MessageRole.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }
                # Consecutive tool results share one user turn
                if converted and converted[-1]["role"] == "user" and isinstance(converted[-1]["content"], list) \
                        and all(b.get("type") == "tool_result" for b in converted[-1]["content"]):
                    converted[-1]["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
                continue

            if message.role == MessageRole.ASSISTANT and message.tool_calls:
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    try:
                        arguments = call.parsed_arguments()
                    except ValueError:
                        arguments = {"raw_arguments": call.arguments}
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": arguments})
                converted.append({"role": "assistant", "content": blocks})
                continue

            converted.append({"role": message.role.value, "content": message.content})

        system = "\n\n".join(system_parts) if system_parts else None
        return system, converted

    async def _send(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        tools: list[ToolSpec],
    ) -> ProviderResponse:
        system, converted = self.convert_messages(messages)
        request_params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": converted,
        }
        if system:
            request_params["system"] = system
        if tools:
            request_params["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools
            ]

        response = await self._get_client().messages.create(**request_params)

        text = ""
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text += block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(response.usage.input_tokens or 0, response.usage.output_tokens or 0)

        return ProviderResponse(
            text=text,
            tool_calls=tool_calls,
            usage=usage,
            model=self.model,
            stop_reason=response.stop_reason,
        )


class OpenAIProvider(BaseProvider):
    """OpenAI (and OpenAI-compatible) chat completions adapter."""

    name = "openai"

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        base_url: str | None = None,
        client: openai.AsyncOpenAI | None = None,
    ):
        super().__init__(model)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY") or os.environ.get("OPENROUTER_API_KEY")
        self.base_url = base_url or os.environ.get("OPENAI_BASE_URL")
        self._client = client

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ProviderError("OpenAI API key required. Set OPENAI_API_KEY.", provider=self.name)
            client_kwargs: dict[str, Any] = {"api_key": self.api_key, "timeout": DEFAULT_REQUEST_TIMEOUT}
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
            self._client = openai.AsyncOpenAI(**client_kwargs)
        return self._client

    async def _send(
        self,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
        tools: list[ToolSpec],
    ) -> ProviderResponse:
        request_params: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature,
        }
        # Reasoning-model families take max_completion_tokens instead of max_tokens
        if self.model.startswith(("gpt-5", "o1", "o3")):
            request_params["max_completion_tokens"] = max_tokens
        else:
            request_params["max_tokens"] = max_tokens
        if tools:
            request_params["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]

        response = await self._get_client().chat.completions.create(**request_params)
        if not response.choices:
            raise ProviderError("Provider returned a response with no choices", provider=self.name)

        choice = response.choices[0]
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (choice.message.tool_calls or [])
        ]
        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(response.usage.prompt_tokens or 0, response.usage.completion_tokens or 0)

        return ProviderResponse(
            text=choice.message.content or "",
            tool_calls=tool_calls,
            usage=usage,
            model=response.model or self.model,
            stop_reason=choice.finish_reason,
        )


def create_provider(config: ModelConfig, sub_agent: bool = True) -> BaseProvider:
    """Build the configured provider adapter."""
    model = config.subagent_model if sub_agent else config.primary_model
    if config.provider == "anthropic":
        return AnthropicProvider(model=model, base_url=config.base_url)
    if config.provider == "openai":
        return OpenAIProvider(model=model, base_url=config.base_url)
    raise ConfigError(f"unknown provider: {config.provider}")


__all__ = [
    "ProviderResponse",
    "BaseProvider",
    "AnthropicProvider",
    "OpenAIProvider",
    "create_provider",
]
