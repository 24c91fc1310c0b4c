"""Provider implementations."""

from .anthropic import AnthropicMessagesProvider
from .base import HttpProvider, Provider
from .gemini import GoogleGeminiProvider
from .mock import MockProvider
from .openai import OpenAIChatProvider
from .openai_responses import OpenAIResponsesProvider

__all__ = [
    "AnthropicMessagesProvider",
    "GoogleGeminiProvider",
    "HttpProvider",
    "MockProvider",
    "OpenAIChatProvider",
    "OpenAIResponsesProvider",
    "Provider",
]
