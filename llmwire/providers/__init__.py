from typing import Dict, Type

from .base import BaseProviderAdapter, ImageResolver, ResolvedImage
from .openai import OpenAIAdapter, OpenAIResponsesStreamParser, OpenAIStreamParser
from .anthropic import AnthropicAdapter, AnthropicStreamParser
from .gemini import GeminiAdapter, GeminiStreamParser
from ..config import ProviderConfig
from ..types import ProviderFormat

ADAPTERS: Dict[ProviderFormat, Type[BaseProviderAdapter]] = {
    ProviderFormat.OPENAI: OpenAIAdapter,
    ProviderFormat.ANTHROPIC: AnthropicAdapter,
    ProviderFormat.GEMINI: GeminiAdapter,
}


def create_adapter(config: ProviderConfig, **kwargs) -> BaseProviderAdapter:
    """Adapter for the native format of ``config``."""
    return ADAPTERS[config.format](config, **kwargs)


__all__ = [
    "ADAPTERS",
    "create_adapter",
    "BaseProviderAdapter",
    "ImageResolver",
    "ResolvedImage",
    "OpenAIAdapter",
    "OpenAIStreamParser",
    "OpenAIResponsesStreamParser",
    "AnthropicAdapter",
    "AnthropicStreamParser",
    "GeminiAdapter",
    "GeminiStreamParser",
]
