"""LLM provider selection.

A provider is one of three frozen dataclasses, each wrapping its vendor's model
enum. They share a small capability surface (display name, OpenAI-compatible
base URL, cost estimate), so callers dispatch on type rather than strings.
"""

from dataclasses import dataclass
from enum import Enum

from noteai_rag.core.errors import ConfigurationError
from noteai_rag.observability.usage_tracker import DEFAULT_PRICING, MODEL_PRICING


class OpenAIModel(str, Enum):
    GPT_4 = "gpt-4"
    GPT_35_TURBO = "gpt-3.5-turbo"
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"


class GeminiModel(str, Enum):
    GEMINI_PRO = "gemini-pro"
    GEMINI_15_FLASH = "gemini-1.5-flash"


class AnthropicModel(str, Enum):
    CLAUDE_3_SONNET = "claude-3-sonnet-20240229"
    CLAUDE_3_HAIKU = "claude-3-haiku-20240307"


_DISPLAY_NAMES = {
    OpenAIModel.GPT_4: "GPT-4",
    OpenAIModel.GPT_35_TURBO: "GPT-3.5 Turbo",
    OpenAIModel.GPT_4O: "GPT-4o",
    OpenAIModel.GPT_4O_MINI: "GPT-4o mini",
    GeminiModel.GEMINI_PRO: "Gemini Pro",
    GeminiModel.GEMINI_15_FLASH: "Gemini 1.5 Flash",
    AnthropicModel.CLAUDE_3_SONNET: "Claude 3 Sonnet",
    AnthropicModel.CLAUDE_3_HAIKU: "Claude 3 Haiku",
}


class _ProviderMixin:
    model: Enum
    vendor: str
    base_url: str

    @property
    def model_name(self) -> str:
        return self.model.value

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self.model]

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Estimated USD cost of one call."""
        pricing = MODEL_PRICING.get(self.model.value, DEFAULT_PRICING)
        return (prompt_tokens / 1000) * pricing.input_per_1k + (completion_tokens / 1000) * pricing.output_per_1k


@dataclass(frozen=True)
class OpenAIProvider(_ProviderMixin):
    model: OpenAIModel = OpenAIModel.GPT_4O_MINI
    vendor = "openai"
    base_url = "https://api.openai.com/v1"


@dataclass(frozen=True)
class GeminiProvider(_ProviderMixin):
    model: GeminiModel = GeminiModel.GEMINI_15_FLASH
    vendor = "gemini"
    # Gemini's OpenAI-compatible endpoint
    base_url = "https://generativelanguage.googleapis.com/v1beta/openai/"


@dataclass(frozen=True)
class AnthropicProvider(_ProviderMixin):
    model: AnthropicModel = AnthropicModel.CLAUDE_3_HAIKU
    vendor = "anthropic"
    # Anthropic's OpenAI SDK compatibility endpoint
    base_url = "https://api.anthropic.com/v1/"


LLMProvider = OpenAIProvider | GeminiProvider | AnthropicProvider

_VENDORS: dict[str, tuple[type, type[Enum]]] = {
    "openai": (OpenAIProvider, OpenAIModel),
    "gemini": (GeminiProvider, GeminiModel),
    "anthropic": (AnthropicProvider, AnthropicModel),
}


def parse_provider(vendor: str, model: str | None = None) -> LLMProvider:
    """Build a provider from a vendor name and an optional model id.

    Args:
        vendor: openai, gemini or anthropic
        model: Model id; the vendor default when omitted

    Returns:
        The provider

    Raises:
        ConfigurationError: Unknown vendor or a model the vendor does not offer
    """
    entry = _VENDORS.get(vendor.lower())
    if entry is None:
        raise ConfigurationError(f"Unknown LLM provider: {vendor}", provider=vendor)
    provider_cls, model_enum = entry
    if model is None:
        return provider_cls()
    try:
        return provider_cls(model=model_enum(model))
    except ValueError:
        raise ConfigurationError(
            f"Model '{model}' is not offered by {vendor}", provider=vendor, model=model
        ) from None


def all_providers() -> list[LLMProvider]:
    """Every provider/model combination."""
    return [cls(model=m) for cls, models in _VENDORS.values() for m in models]
