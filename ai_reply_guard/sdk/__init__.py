"""
SDK for AI Reply Guard.

Provides the completion provider used by the orchestrator.
"""

from .openai_client import Completion, GuardedOpenAI, ProviderError

__all__ = ["Completion", "GuardedOpenAI", "ProviderError"]
