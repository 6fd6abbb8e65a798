"""
Tests for noteai_rag/agent/providers.py and noteai_rag/agent/runtime.py
"""

from unittest.mock import AsyncMock, Mock

import httpx
import openai
import pytest

from noteai_rag.agent.providers import (
    AnthropicModel,
    AnthropicProvider,
    GeminiProvider,
    OpenAIModel,
    OpenAIProvider,
    all_providers,
    parse_provider,
)
from noteai_rag.agent.runtime import ChatCompletionAnswerGenerator, build_system_prompt
from noteai_rag.core.errors import ConfigurationError, ProviderUnavailableError
from noteai_rag.rag.context import ContextAssembler
from noteai_rag.rag.models import RetrievedChunk


@pytest.fixture
def context(make_metadata, make_chunks):
    chunk = make_chunks("note-1", ["The budget review is on Friday."])[0]
    item = RetrievedChunk(chunk, make_metadata("note-1", title="Weekly sync"), 0.9)
    return ContextAssembler().assemble([item], max_tokens=100, query="When is the review?")


def _completion(content="Friday.", prompt_tokens=50, completion_tokens=5):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content), finish_reason="stop")]
    response.usage = Mock(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )
    response.model = "gpt-4o-mini"
    return response


def _generator_with_client(create: AsyncMock, **kwargs) -> ChatCompletionAnswerGenerator:
    generator = ChatCompletionAnswerGenerator(api_keys={"openai": "sk-test"}, retry_backoff=0, **kwargs)
    client = Mock()
    client.chat.completions.create = create
    client.close = AsyncMock()
    generator._clients["openai"] = client
    return generator


class TestProviders:
    """Test provider parsing and cost estimation."""

    def test_vendor_defaults(self):
        assert parse_provider("openai") == OpenAIProvider(OpenAIModel.GPT_4O_MINI)
        assert isinstance(parse_provider("Gemini"), GeminiProvider)
        assert parse_provider("anthropic").model == AnthropicModel.CLAUDE_3_HAIKU

    def test_explicit_model(self):
        provider = parse_provider("anthropic", "claude-3-sonnet-20240229")
        assert provider == AnthropicProvider(AnthropicModel.CLAUDE_3_SONNET)
        assert provider.display_name == "Claude 3 Sonnet"

    def test_unknown_vendor(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_provider("mistral")
        assert exc_info.value.context["provider"] == "mistral"

    def test_model_from_another_vendor(self):
        with pytest.raises(ConfigurationError):
            parse_provider("openai", "gemini-pro")

    def test_all_providers(self):
        providers = all_providers()
        assert len(providers) == 8
        assert len({p.model_name for p in providers}) == 8

    def test_estimate_cost(self):
        provider = OpenAIProvider(OpenAIModel.GPT_4)
        assert provider.estimate_cost(1000, 1000) == pytest.approx(0.09)


class TestSystemPrompt:
    """Test prompt construction from a context."""

    def test_prompt_numbers_context_chunks(self, context):
        prompt = build_system_prompt(context)

        assert "<retrieved_context>" in prompt
        assert "【1/1】 Weekly sync (note)" in prompt
        assert "The budget review is on Friday." in prompt
        assert "GROUNDED RESPONSES ONLY" in prompt

    def test_prompt_without_context(self):
        empty = ContextAssembler().assemble([], max_tokens=100)

        prompt = build_system_prompt(empty, grounded_only=False)

        assert "No relevant context was found" in prompt
        assert "<retrieved_context>" not in prompt
        assert "GROUNDED" not in prompt


class TestChatCompletionAnswerGenerator:
    """Test answer generation against a mocked client."""

    @pytest.mark.asyncio
    async def test_generate(self, context):
        create = AsyncMock(return_value=_completion())
        generator = _generator_with_client(create)

        answer = await generator.generate("When is the review?", context, OpenAIProvider())

        assert answer.content == "Friday."
        assert answer.total_tokens == 55
        assert answer.finish_reason == "stop"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][1] == {"role": "user", "content": "When is the review?"}

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self, context):
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
        create = AsyncMock(side_effect=[error, _completion()])
        generator = _generator_with_client(create, retry_count=1)

        answer = await generator.generate("q", context, OpenAIProvider())

        assert answer.content == "Friday."
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, context):
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
        create = AsyncMock(side_effect=error)
        generator = _generator_with_client(create, retry_count=2)

        with pytest.raises(ProviderUnavailableError):
            await generator.generate("q", context, OpenAIProvider())

        assert create.await_count == 3

    @pytest.mark.asyncio
    async def test_missing_api_key(self, context):
        generator = ChatCompletionAnswerGenerator(api_keys={"openai": "sk-test"})

        with pytest.raises(ConfigurationError):
            await generator.generate("q", context, GeminiProvider())

    @pytest.mark.asyncio
    async def test_langfuse_generation_recorded(self, context):
        langfuse = Mock()
        generation = langfuse.start_generation.return_value
        generator = _generator_with_client(AsyncMock(return_value=_completion()), langfuse=langfuse)

        await generator.generate("q", context, OpenAIProvider())

        assert langfuse.start_generation.call_args.kwargs["model"] == "gpt-4o-mini"
        assert generation.update.call_args.kwargs["usage_details"]["total"] == 55
        generation.end.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_releases_clients(self, context):
        generator = _generator_with_client(AsyncMock(return_value=_completion()))
        client = generator._clients["openai"]

        await generator.close()

        client.close.assert_awaited_once()
        assert generator._clients == {}
