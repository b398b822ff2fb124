"""LLM module."""

from .classifier import IIntentClassifier, IntentClassifier
from .llm_provider import ILLMProvider, LLMAuthenticationError, LLMProvider

__all__ = [
    "ILLMProvider",
    "LLMProvider",
    "LLMAuthenticationError",
    "IIntentClassifier",
    "IntentClassifier",
]
