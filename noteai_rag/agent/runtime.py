"""Answer generation for RAG questions.

Sends an assembled context plus the question to a chat-completions endpoint.
Every supported vendor exposes an OpenAI-compatible API, so one client type
serves all of them:
- Grounded system prompt built from the context's chunks
- Per-call timeout with bounded retries on transient failures
- Langfuse generations for tracing
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
import openai
from langfuse import Langfuse
from openai import AsyncOpenAI

from noteai_rag.agent.providers import LLMProvider
from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import (
    ConfigurationError,
    InvalidInputError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RAGError,
    RateLimitExceeded,
    TransientProviderError,
)

if TYPE_CHECKING:
    from noteai_rag.rag.models import RAGContext

logger = logging.getLogger(__name__)


@dataclass
class GeneratedAnswer:
    """Raw answer and usage from the generation backend."""

    content: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: float
    finish_reason: str | None = None


class AnswerGenerator(ABC):
    """Turns a question and its context into an answer. Treated as a black box."""

    @abstractmethod
    async def generate(self, question: str, context: RAGContext, provider: LLMProvider) -> GeneratedAnswer:
        """Generate an answer grounded in ``context``."""

    async def close(self) -> None:
        """Release clients."""


def build_system_prompt(context: RAGContext, grounded_only: bool = True) -> str:
    """Build the system prompt with the retrieved context."""
    base_prompt = """You are the knowledge assistant for a note-taking application.
You answer questions about the user's recordings, transcriptions and documents.

Key behaviors:
- Be concise but thorough
- Cite sources by their number when using retrieved context
- If you don't know something, say so"""

    if grounded_only:
        base_prompt += """

CRITICAL CONSTRAINT - GROUNDED RESPONSES ONLY:
You must ONLY respond using information from the <retrieved_context> section below.
- If the answer is not found in <retrieved_context>, clearly state that the notes do not contain it.
- Do NOT use external knowledge or make assumptions beyond what is explicitly stated."""

    if context.chunks:
        total = len(context.chunks)
        context_text = "\n\n".join(
            f"【{i}/{total}】 {item.metadata.title} ({item.metadata.content_type.value})\n{item.text}"
            for i, item in enumerate(context.chunks, 1)
        )
        base_prompt += f"""

<retrieved_context>
{context_text}
</retrieved_context>"""
    else:
        base_prompt += "\n\nNo relevant context was found for this question."

    return base_prompt


class ChatCompletionAnswerGenerator(AnswerGenerator):
    """Answer generation over OpenAI-compatible chat completions."""

    def __init__(
        self,
        api_keys: dict[str, str],
        timeout: float = 60.0,
        retry_count: int = 2,
        retry_backoff: float = 0.5,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        grounded_only: bool = True,
        langfuse: Langfuse | None = None,
        base_urls: dict[str, str] | None = None,
    ):
        self.api_keys = api_keys
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_backoff = retry_backoff
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.grounded_only = grounded_only
        self.langfuse = langfuse
        self.base_urls = base_urls or {}
        self._clients: dict[str, AsyncOpenAI] = {}

    def _get_client(self, provider: LLMProvider) -> AsyncOpenAI:
        client = self._clients.get(provider.vendor)
        if client is None:
            api_key = self.api_keys.get(provider.vendor)
            if not api_key:
                raise ConfigurationError(
                    f"No API key configured for {provider.vendor}", provider=provider.vendor
                )
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_urls.get(provider.vendor, provider.base_url),
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                max_retries=0,  # Retries are handled here
            )
            self._clients[provider.vendor] = client
        return client

    async def generate(self, question: str, context: RAGContext, provider: LLMProvider) -> GeneratedAnswer:
        """Send a chat completion request.

        Args:
            question: User's question
            context: Assembled RAG context
            provider: Vendor and model to use

        Returns:
            GeneratedAnswer with content and usage info
        """
        client = self._get_client(provider)
        messages = [
            {"role": "system", "content": build_system_prompt(context, self.grounded_only)},
            {"role": "user", "content": question},
        ]

        generation = None
        if self.langfuse:
            try:
                generation = self.langfuse.start_generation(
                    name="rag-answer",
                    model=provider.model_name,
                    input=messages,
                    metadata={"vendor": provider.vendor, "context_chunks": len(context.chunks)},
                )
            except Exception as e:
                # Langfuse errors shouldn't break answering
                logger.warning(f"Langfuse generation start failed: {e}")

        attempts = self.retry_count + 1
        last_error: RAGError | None = None
        try:
            for attempt in range(1, attempts + 1):
                try:
                    result = await self._complete(client, provider, messages)
                except TransientProviderError as e:
                    last_error = e
                    if attempt < attempts:
                        delay = self.retry_backoff * (2 ** (attempt - 1))
                        logger.warning(
                            f"[Answer] Attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s"
                        )
                        await asyncio.sleep(delay)
                    continue

                if generation:
                    generation.update(
                        output=result.content,
                        usage_details={
                            "input": result.prompt_tokens,
                            "output": result.completion_tokens,
                            "total": result.total_tokens,
                        },
                        metadata={"finish_reason": result.finish_reason, "latency_ms": result.latency_ms},
                    )
                    generation.end()
                return result

            raise ProviderUnavailableError("answer", attempts, last_error) from last_error
        except Exception as e:
            if generation:
                generation.update(level="ERROR", status_message=str(e))
                generation.end()
            raise

    async def _complete(self, client: AsyncOpenAI, provider: LLMProvider, messages: list[dict]) -> GeneratedAnswer:
        start_time = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=provider.model_name,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
        except (TimeoutError, openai.APITimeoutError) as e:
            raise ProviderTimeoutError("answer", self.timeout) from e
        except openai.RateLimitError as e:
            raise RateLimitExceeded(limit_type="provider", limit=0, remaining=0, retry_after=60) from e
        except openai.APIConnectionError as e:
            raise TransientProviderError(f"{provider.vendor} endpoint unreachable: {e}") from e
        except openai.BadRequestError as e:
            raise InvalidInputError(f"Answer request rejected: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientProviderError(f"{provider.vendor} endpoint error {e.status_code}") from e
            raise ConfigurationError(f"Answer request failed with {e.status_code}: {e}") from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        choice = response.choices[0]
        usage = response.usage
        return GeneratedAnswer(
            content=choice.message.content or "",
            model=response.model or provider.model_name,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            latency_ms=latency_ms,
            finish_reason=choice.finish_reason,
        )

    async def close(self) -> None:
        if self.langfuse:
            self.langfuse.flush()
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


# Global generator instance
_answer_generator: AnswerGenerator | None = None


def get_answer_generator() -> AnswerGenerator:
    """Get or create the global answer generator."""
    global _answer_generator
    if _answer_generator is None:
        settings = get_settings()
        api_keys = {
            vendor: key
            for vendor, key in (
                ("openai", settings.openai_api_key),
                ("anthropic", settings.anthropic_api_key),
                ("gemini", settings.gemini_api_key),
            )
            if key
        }
        base_urls = {"openai": settings.openai_base_url} if settings.openai_base_url else None
        langfuse = None
        if settings.langfuse_enabled:
            langfuse = Langfuse(
                public_key=settings.langfuse_public_key,
                secret_key=settings.langfuse_secret_key,
                host=settings.langfuse_host,
            )
        _answer_generator = ChatCompletionAnswerGenerator(
            api_keys=api_keys,
            timeout=settings.answer_timeout,
            retry_count=settings.answer_retry_count,
            max_tokens=settings.answer_max_tokens,
            temperature=settings.answer_temperature,
            grounded_only=settings.answer_grounded_only,
            langfuse=langfuse,
            base_urls=base_urls,
        )
    return _answer_generator


async def shutdown_answer_generator() -> None:
    """Shutdown the global generator."""
    global _answer_generator
    if _answer_generator:
        await _answer_generator.close()
        _answer_generator = None
