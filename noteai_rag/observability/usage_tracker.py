"""Usage tracking for remote embedding and answer-generation calls.

Every remote call is reported here before the caller's own operation is
considered complete:
- Prometheus counters for tokens, cost and latency
- Langfuse generations for detailed tracing (optional)
- An in-process ring buffer of recent records for summaries
"""

import logging
import time
from collections import deque
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from langfuse import Langfuse
from prometheus_client import Counter, Gauge, Histogram

from noteai_rag.core.config import get_settings

logger = logging.getLogger(__name__)


# Prometheus Metrics
TOKENS_TOTAL = Counter(
    "noteai_tokens_total",
    "Total tokens consumed",
    ["provider", "model", "token_type"],  # token_type: input, output
)

COST_TOTAL = Counter(
    "noteai_cost_usd_total",
    "Total estimated cost in USD",
    ["provider", "model"],
)

REQUEST_LATENCY = Histogram(
    "noteai_request_duration_seconds",
    "Provider call latency in seconds",
    ["provider", "model", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

REQUESTS_TOTAL = Counter(
    "noteai_requests_total",
    "Provider calls by outcome",
    ["provider", "model", "operation", "outcome"],
)

ACTIVE_REQUESTS = Gauge(
    "noteai_active_requests",
    "Currently active provider requests",
    ["model"],
)


@dataclass
class ModelPricing:
    """Pricing per 1K tokens for a model."""

    input_per_1k: float
    output_per_1k: float


# Fallback when a model has no entry
DEFAULT_PRICING = ModelPricing(input_per_1k=0.002, output_per_1k=0.002)

MODEL_PRICING: dict[str, ModelPricing] = {
    # OpenAI
    "gpt-4": ModelPricing(input_per_1k=0.03, output_per_1k=0.06),
    "gpt-4o": ModelPricing(input_per_1k=0.0025, output_per_1k=0.01),
    "gpt-4o-mini": ModelPricing(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-3.5-turbo": ModelPricing(input_per_1k=0.0005, output_per_1k=0.0015),
    # Gemini
    "gemini-pro": ModelPricing(input_per_1k=0.0005, output_per_1k=0.0015),
    "gemini-1.5-flash": ModelPricing(input_per_1k=0.000075, output_per_1k=0.0003),
    # Anthropic
    "claude-3-sonnet-20240229": ModelPricing(input_per_1k=0.003, output_per_1k=0.015),
    "claude-3-haiku-20240307": ModelPricing(input_per_1k=0.00025, output_per_1k=0.00125),
    # Embeddings
    "text-embedding-3-small": ModelPricing(input_per_1k=0.00002, output_per_1k=0.0),
    "text-embedding-3-large": ModelPricing(input_per_1k=0.00013, output_per_1k=0.0),
    "text-embedding-ada-002": ModelPricing(input_per_1k=0.0001, output_per_1k=0.0),
}


@dataclass
class UsageRecord:
    """Record of a single provider call."""

    provider: str
    model: str
    operation: str  # embedding, answer
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: float
    cost_usd: float
    success: bool
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


class UsageRecorder(Protocol):
    """What the RAG components need from a usage tracker."""

    async def track(
        self,
        provider: str,
        model: str,
        operation: str,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        latency_ms: float = 0.0,
        success: bool = True,
        error: str | None = None,
        cost_usd: float | None = None,
        metadata: dict | None = None,
    ) -> UsageRecord: ...


class UsageTracker:
    """Track provider usage for cost attribution and observability.

    Integrates with:
    - Prometheus for metrics
    - Langfuse for detailed tracing
    - A bounded in-memory history for reporting
    """

    def __init__(
        self,
        langfuse: Langfuse | None = None,
        custom_pricing: dict[str, ModelPricing] | None = None,
        history_size: int = 1000,
    ):
        self.langfuse = langfuse
        self.pricing = {**MODEL_PRICING, **(custom_pricing or {})}
        self._history: deque[UsageRecord] = deque(maxlen=history_size)

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate cost in USD for token usage."""
        pricing = self.pricing.get(model, DEFAULT_PRICING)

        input_cost = (prompt_tokens / 1000) * pricing.input_per_1k
        output_cost = (completion_tokens / 1000) * pricing.output_per_1k

        return input_cost + output_cost

    async def track(
        self,
        provider: str,
        model: str,
        operation: str,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        latency_ms: float = 0.0,
        success: bool = True,
        error: str | None = None,
        cost_usd: float | None = None,
        metadata: dict | None = None,
    ) -> UsageRecord:
        """Track a usage event and emit metrics.

        Args:
            provider: Provider identifier (openai, azure, local, anthropic, gemini)
            model: Model name used
            operation: "embedding" or "answer"
            prompt_tokens: Input token count
            completion_tokens: Output token count
            latency_ms: Call latency in milliseconds
            success: Whether the call succeeded
            error: Failure description for unsuccessful calls
            cost_usd: Explicit cost; computed from the pricing table when omitted
            metadata: Additional context

        Returns:
            UsageRecord with calculated cost
        """
        total_tokens = prompt_tokens + completion_tokens
        if cost_usd is None:
            cost_usd = self.calculate_cost(model, prompt_tokens, completion_tokens) if success else 0.0

        TOKENS_TOTAL.labels(provider, model, "input").inc(prompt_tokens)
        TOKENS_TOTAL.labels(provider, model, "output").inc(completion_tokens)
        COST_TOTAL.labels(provider, model).inc(cost_usd)
        REQUEST_LATENCY.labels(provider, model, operation).observe(latency_ms / 1000)
        REQUESTS_TOTAL.labels(provider, model, operation, "success" if success else "failure").inc()

        record = UsageRecord(
            provider=provider,
            model=model,
            operation=operation,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            latency_ms=latency_ms,
            cost_usd=cost_usd,
            success=success,
            error=error,
            metadata=dict(metadata or {}),
        )
        self._history.append(record)

        if self.langfuse:
            self._trace(record)

        return record

    def _trace(self, record: UsageRecord) -> None:
        try:
            generation = self.langfuse.start_generation(
                name=f"{record.operation}-call",
                model=record.model,
                metadata={
                    "provider": record.provider,
                    "latency_ms": record.latency_ms,
                    **record.metadata,
                },
            )
            generation.update(
                usage_details={
                    "input": record.prompt_tokens,
                    "output": record.completion_tokens,
                    "total": record.total_tokens,
                },
                cost_details={"total": record.cost_usd},
                level="DEFAULT" if record.success else "ERROR",
                status_message=record.error,
            )
            generation.end()
        except Exception as e:
            # Tracing must never fail the tracked call
            logger.warning(f"Langfuse generation failed: {e}")

    def recent(self, limit: int = 100) -> list[UsageRecord]:
        """Most recent records, oldest first."""
        return list(self._history)[-limit:]

    def summary(self) -> dict:
        """Aggregate totals over the retained history."""
        records = list(self._history)
        return {
            "calls": len(records),
            "failures": sum(1 for r in records if not r.success),
            "total_tokens": sum(r.total_tokens for r in records),
            "total_cost_usd": sum(r.cost_usd for r in records),
            "by_operation": {
                op: sum(1 for r in records if r.operation == op)
                for op in sorted({r.operation for r in records})
            },
        }

    @asynccontextmanager
    async def track_request(self, model: str) -> AsyncGenerator[None, None]:
        """Context manager that keeps the active-requests gauge current.

        Usage:
            async with tracker.track_request("gpt-4o"):
                response = await call_llm(...)
        """
        ACTIVE_REQUESTS.labels(model).inc()
        start_time = time.perf_counter()

        try:
            yield
        finally:
            ACTIVE_REQUESTS.labels(model).dec()
            logger.debug(f"[Usage] {model} request took {time.perf_counter() - start_time:.3f}s")


# Singleton instance
_usage_tracker: UsageTracker | None = None


def get_usage_tracker() -> UsageTracker:
    """Get or create the global UsageTracker, with Langfuse when keys are configured."""
    global _usage_tracker

    if _usage_tracker is None:
        settings = get_settings()
        langfuse = None
        if settings.langfuse_enabled:
            langfuse = Langfuse(
                public_key=settings.langfuse_public_key,
                secret_key=settings.langfuse_secret_key,
                host=settings.langfuse_host,
            )
        _usage_tracker = UsageTracker(langfuse=langfuse)

    return _usage_tracker


def shutdown_usage_tracker() -> None:
    """Flush pending Langfuse events."""
    global _usage_tracker
    if _usage_tracker and _usage_tracker.langfuse:
        _usage_tracker.langfuse.flush()
    _usage_tracker = None
