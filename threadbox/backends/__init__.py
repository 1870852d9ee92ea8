"""
Completion backends for threadbox.
OpenAI-compatible, Ollama and OpenRouter, behind one CompletionProvider.
"""
from threadbox.backends.base import BaseBackend, BackendResponse
from threadbox.backends.ollama import OllamaBackend
from threadbox.backends.openai_compat import OpenAICompatibleBackend
from threadbox.backends.openrouter import OpenRouterBackend
from threadbox.backends.provider import CompletionProvider

__all__ = [
    "BaseBackend",
    "BackendResponse",
    "CompletionProvider",
    "OllamaBackend",
    "OpenAICompatibleBackend",
    "OpenRouterBackend",
]
