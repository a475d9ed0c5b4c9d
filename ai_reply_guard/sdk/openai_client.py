"""
Guarded OpenAI client wrapper.

Issues completion calls with a bounded timeout and normalizes the
response of either OpenAI API style into a single Completion.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_CONTENT_FILTER = "content_filter"

API_CHAT = "chat.completions"
API_RESPONSES = "responses"

# Responses API incomplete_details.reason -> chat finish_reason
_INCOMPLETE_REASONS = {
    "max_output_tokens": FINISH_LENGTH,
    "content_filter": FINISH_CONTENT_FILTER,
}


class ProviderError(Exception):
    """Raised when the completion provider fails or times out."""


@dataclass(frozen=True)
class Completion:
    """Normalized result of one completion call."""
    text: str
    finish_reason: str
    usage: TokenUsage
    model: str
    api: str = API_CHAT


class GuardedOpenAI:
    """Async OpenAI client wrapper with timeout and API-style fallback.

    Chat Completions is tried first. If the endpoint rejects the request
    as unsupported for the model, the request is re-issued through the
    Responses API; once that succeeds it is used for every later call.
    """

    def __init__(
        self,
        model: str,
        timeout_seconds: float = 60.0,
        client: Optional[Any] = None
    ):
        """Initialize guarded OpenAI client.

        Args:
            model: OpenAI model name (required)
            timeout_seconds: Upper bound for a single call
            client: Preconfigured AsyncOpenAI-compatible client

        Raises:
            ValueError: If model is missing/empty or timeout is not positive
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self.model = model
        self.timeout_seconds = timeout_seconds
        self.client = client if client is not None else AsyncOpenAI()
        self.api = API_CHAT

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_output_tokens: int,
        model: Optional[str] = None
    ) -> Completion:
        """Run one completion call.

        Args:
            messages: Chat messages (role/content dictionaries)
            max_output_tokens: Output token cap for this call
            model: Override for the configured model

        Returns:
            Completion with text, finish reason and usage

        Raises:
            ValueError: If messages is empty
            ProviderError: On any SDK failure or timeout
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        model = model or self.model

        if self.api == API_CHAT:
            try:
                return await self._bounded(self._chat(model, messages, max_output_tokens))
            except ProviderError:
                raise
            except (openai.NotFoundError, openai.BadRequestError) as e:
                if not _is_unsupported(e):
                    raise ProviderError(f"Chat completion failed: {e}") from e
                logger.warning(
                    "Chat Completions does not support request for %s (%s); trying Responses API",
                    model, e
                )
            except Exception as e:
                raise ProviderError(f"Chat completion failed: {e}") from e

            completion = await self._call_responses(model, messages, max_output_tokens)
            logger.info("Responses API accepted %s; using it for later calls", model)
            self.api = API_RESPONSES
            return completion

        return await self._call_responses(model, messages, max_output_tokens)

    async def _call_responses(
        self,
        model: str,
        messages: List[Dict[str, str]],
        max_output_tokens: int
    ) -> Completion:
        try:
            return await self._bounded(self._responses(model, messages, max_output_tokens))
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Responses call failed: {e}") from e

    async def _bounded(self, call) -> Completion:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Completion call timed out after {self.timeout_seconds}s"
            ) from e

    async def _chat(self, model: str, messages: List[Dict[str, str]], max_output_tokens: int) -> Completion:
        response = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_completion_tokens=max_output_tokens
        )
        if not response.choices:
            return Completion(
                text="",
                finish_reason=FINISH_STOP,
                usage=TokenUsage.from_response(response.usage),
                model=model,
                api=API_CHAT
            )
        choice = response.choices[0]
        return Completion(
            text=(choice.message.content or "").strip(),
            finish_reason=choice.finish_reason or FINISH_STOP,
            usage=TokenUsage.from_response(response.usage),
            model=model,
            api=API_CHAT
        )

    async def _responses(self, model: str, messages: List[Dict[str, str]], max_output_tokens: int) -> Completion:
        response = await self.client.responses.create(
            model=model,
            input=messages,
            max_output_tokens=max_output_tokens
        )
        finish_reason = FINISH_STOP
        if getattr(response, "status", None) == "incomplete":
            details = getattr(response, "incomplete_details", None)
            reason = getattr(details, "reason", None)
            finish_reason = _INCOMPLETE_REASONS.get(reason, FINISH_STOP)
        return Completion(
            text=(response.output_text or "").strip(),
            finish_reason=finish_reason,
            usage=TokenUsage.from_response(response.usage),
            model=model,
            api=API_RESPONSES
        )


# Error codes and message fragments OpenAI uses when a model or parameter
# is only served by the other API style.
_UNSUPPORTED_CODES = {"unsupported_parameter", "unsupported_value", "model_not_supported"}
_UNSUPPORTED_MARKERS = ("not supported", "unsupported", "v1/responses")


def _is_unsupported(error: openai.APIStatusError) -> bool:
    """True when Chat Completions refused the request because of the API style."""
    if isinstance(error, openai.NotFoundError):
        return True
    if getattr(error, "code", None) in _UNSUPPORTED_CODES:
        return True
    message = str(getattr(error, "message", "") or error).lower()
    return any(marker in message for marker in _UNSUPPORTED_MARKERS)
