"""
Token counting and usage tracking.

Normalizes the usage blocks returned by the different completion APIs.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Granular counts are preferred; some responses only carry a total,
    and some carry nothing at all.
    """
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    @property
    def has_split(self) -> bool:
        """True when both prompt and completion counts are known."""
        return self.prompt_tokens is not None and self.completion_tokens is not None

    @property
    def is_empty(self) -> bool:
        return not self.has_split and self.total_tokens is None

    @classmethod
    def from_response(cls, usage: Any) -> "TokenUsage":
        """Build usage from a Chat Completions or Responses usage object.

        Chat Completions reports prompt/completion tokens, Responses reports
        input/output tokens. Missing attributes are left as None.
        """
        if usage is None:
            return cls()
        prompt = _int_or_none(getattr(usage, "prompt_tokens", None))
        if prompt is None:
            prompt = _int_or_none(getattr(usage, "input_tokens", None))
        completion = _int_or_none(getattr(usage, "completion_tokens", None))
        if completion is None:
            completion = _int_or_none(getattr(usage, "output_tokens", None))
        total = _int_or_none(getattr(usage, "total_tokens", None))
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _int_or_none(value: Any) -> Optional[int]:
    """Token count as int; whole-number floats are accepted, anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None
