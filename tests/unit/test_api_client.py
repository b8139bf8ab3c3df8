"""
Unit tests for the provider adapters.

SDK clients are replaced with mocks; no network access.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from src.api_client import AnthropicProvider, OpenAIProvider, create_provider
from src.config import ModelConfig
from src.errors import ConfigError, ProviderError
from src.types import ChatMessage, TokenUsage, ToolCall, ToolSpec


def anthropic_client(response=None, error=None):
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=response, side_effect=error)
    return client


def openai_client(response=None, error=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=error)
    return client


class TestAnthropicConversion:
    """Tests for AnthropicProvider.convert_messages."""

    def test_roles_and_tool_blocks(self):
        """System text is split out; tool calls and results become blocks."""
        messages = [
            ChatMessage.system("You are an analyst."),
            ChatMessage.user("Review billing"),
            ChatMessage.assistant("Reading files.", [
                ToolCall(id="t1", name="read_file", arguments='{"path": "billing.py"}'),
                ToolCall(id="t2", name="grep", arguments="not json"),
            ]),
            ChatMessage.tool("file body", tool_call_id="t1", name="read_file"),
            ChatMessage.tool("3 matches", tool_call_id="t2", name="grep"),
            ChatMessage.assistant("Done."),
        ]

        system, converted = AnthropicProvider.convert_messages(messages)

        assert system == "You are an analyst."
        assert [m["role"] for m in converted] == ["user", "assistant", "user", "assistant"]
        blocks = converted[1]["content"]
        assert blocks[0] == {"type": "text", "text": "Reading files."}
        assert blocks[1] == {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "billing.py"}}
        assert blocks[2]["input"] == {"raw_arguments": "not json"}
        assert [b["tool_use_id"] for b in converted[2]["content"]] == ["t1", "t2"]
        assert converted[3] == {"role": "assistant", "content": "Done."}


class TestAnthropicProvider:
    """Tests for AnthropicProvider.send."""

    @pytest.mark.asyncio
    async def test_text_and_tool_use(self):
        """Text blocks are joined and tool_use blocks become tool calls."""
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Looking"),
                SimpleNamespace(type="tool_use", id="t1", name="read_file", input={"path": "a.py"}),
            ],
            usage=SimpleNamespace(input_tokens=12, output_tokens=7),
            stop_reason="tool_use",
        )
        client = anthropic_client(response)
        provider = AnthropicProvider(model="claude-test", api_key="key", client=client)

        result = await provider.send(
            [ChatMessage.system("sys"), ChatMessage.user("hi")],
            max_tokens=100,
            temperature=0.2,
            tools=[ToolSpec(name="read_file", description="Read a file")],
        )

        assert result.text == "Looking"
        assert result.tool_calls[0].name == "read_file"
        assert result.tool_calls[0].parsed_arguments() == {"path": "a.py"}
        assert result.usage == TokenUsage(12, 7)
        assert result.stop_reason == "tool_use"

        params = client.messages.create.call_args.kwargs
        assert params["system"] == "sys"
        assert params["model"] == "claude-test"
        assert params["tools"][0]["name"] == "read_file"
        assert "input_schema" in params["tools"][0]

    @pytest.mark.asyncio
    async def test_connection_error_is_wrapped(self):
        """SDK errors become recoverable ProviderErrors."""
        error = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        provider = AnthropicProvider(api_key="key", client=anthropic_client(error=error))

        with pytest.raises(ProviderError) as exc_info:
            await provider.send([ChatMessage.user("hi")], 100, 0.0)

        assert exc_info.value.recoverable is True
        assert exc_info.value.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch):
        """Without a key no client can be built."""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)
        provider = AnthropicProvider()

        with pytest.raises(ProviderError, match="API key required"):
            await provider.send([ChatMessage.user("hi")], 100, 0.0)


class TestOpenAIProvider:
    """Tests for OpenAIProvider.send."""

    @staticmethod
    def completion(content="hi", tool_calls=None, model="gpt-4o-mini"):
        message = SimpleNamespace(content=content, tool_calls=tool_calls)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message, finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=5, completion_tokens=3),
            model=model,
        )

    @pytest.mark.asyncio
    async def test_text_and_tool_calls(self):
        """Function tool calls are mapped and usage is reported."""
        calls = [SimpleNamespace(id="c1", function=SimpleNamespace(name="grep", arguments='{"q": "x"}'))]
        client = openai_client(self.completion(content=None, tool_calls=calls))
        provider = OpenAIProvider(model="gpt-4o-mini", api_key="key", client=client)

        result = await provider.send([ChatMessage.user("hi")], 100, 0.3, tools=[ToolSpec(name="grep")])

        assert result.text == ""
        assert result.tool_calls == [ToolCall(id="c1", name="grep", arguments='{"q": "x"}')]
        assert result.usage == TokenUsage(5, 3)
        params = client.chat.completions.create.call_args.kwargs
        assert params["max_tokens"] == 100
        assert params["tools"][0]["function"]["name"] == "grep"
        assert params["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_reasoning_models_use_completion_tokens(self):
        """o-series and gpt-5 models take max_completion_tokens."""
        client = openai_client(self.completion())
        provider = OpenAIProvider(model="o3-mini", api_key="key", client=client)

        await provider.send([ChatMessage.user("hi")], 100, 0.3)

        params = client.chat.completions.create.call_args.kwargs
        assert params["max_completion_tokens"] == 100
        assert "max_tokens" not in params

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        """A response without choices is a provider error."""
        response = SimpleNamespace(choices=[], usage=None, model="gpt-4o-mini")
        provider = OpenAIProvider(api_key="key", client=openai_client(response))

        with pytest.raises(ProviderError, match="no choices"):
            await provider.send([ChatMessage.user("hi")], 100, 0.3)

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self):
        """httpx transport failures are wrapped as recoverable."""
        provider = OpenAIProvider(api_key="key", client=openai_client(error=httpx.ConnectError("refused")))

        with pytest.raises(ProviderError) as exc_info:
            await provider.send([ChatMessage.user("hi")], 100, 0.3)
        assert exc_info.value.recoverable is True


class TestCreateProvider:
    """Tests for create_provider."""

    def test_anthropic(self):
        """Sub-agent providers use the sub-agent model."""
        provider = create_provider(ModelConfig(provider="anthropic", subagent_model="claude-small"))

        assert isinstance(provider, AnthropicProvider)
        assert provider.model == "claude-small"

    def test_openai_primary(self):
        """The primary model is used when not building for a sub-agent."""
        provider = create_provider(ModelConfig(provider="openai", primary_model="gpt-4"), sub_agent=False)

        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4"

    def test_unknown_provider(self):
        """Unknown providers are a configuration error."""
        with pytest.raises(ConfigError):
            create_provider(ModelConfig(provider="bedrock"))
