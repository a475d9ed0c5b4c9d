"""
Completion orchestration.

Drives one mention through the budget check, the model call loop and
delivery:

    BUDGET_CHECK -> BUILD_PROMPT -> CALL -> {CONTINUE, SUMMARIZE, DONE, REJECTED, EMPTY}

Cost is recorded after every model call, including calls whose output
is discarded. Conversation memory is only written once an exchange
completes.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from ai_reply_guard.config.loader import BotConfig
from ai_reply_guard.sdk.openai_client import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
    Completion,
)
from ai_reply_guard.storage.ledger import BudgetLedger, utc_day

from .delivery import Messenger, ResponseDelivery
from .guardrails import BudgetExceeded, BudgetGate, DenialReason
from .memory import ConversationMemory
from .pricing import calculate_cost

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"<@!?\d+>")
CONTINUE_PROMPT = "Continue."
SUMMARY_INSTRUCTIONS = (
    "Shorten the following answer so that it is under {limit} characters. "
    "Keep all key information, links and instructions. Reply with the shortened answer only."
)


class Outcome(Enum):
    """Terminal state of one mention exchange."""
    DONE = "done"
    TRUNCATED = "truncated"
    REJECTED = "rejected"
    EMPTY = "empty"
    BUDGET_EXCEEDED = "budget_exceeded"
    FAILED = "failed"


class CompletionProvider(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_output_tokens: int,
        model: Optional[str] = None
    ) -> Completion:
        ...


@dataclass(frozen=True)
class MentionRequest:
    """An inbound mention addressed to the bot."""
    conversation_id: str
    requester_id: str
    content: str
    requester_roles: Tuple[str, ...] = field(default_factory=tuple)


@dataclass
class _Exchange:
    request: MentionRequest
    day: str
    user_text: str
    calls: int = 0


def strip_mentions(text: str) -> str:
    """Remove user mention markup and surrounding whitespace."""
    return MENTION_PATTERN.sub("", text or "").strip()


class CompletionOrchestrator:
    """Runs the call/continue/summarize cycle for mentions.

    One instance is built at startup and shared by every conversation;
    the ledger and memory it is given are the process-wide stores.
    """

    def __init__(
        self,
        config: BotConfig,
        provider: CompletionProvider,
        ledger: BudgetLedger,
        memory: ConversationMemory,
        gate: BudgetGate,
        delivery: ResponseDelivery,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config
        self.provider = provider
        self.ledger = ledger
        self.memory = memory
        self.gate = gate
        self.delivery = delivery
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle_mention(self, request: MentionRequest, messenger: Messenger) -> Outcome:
        """Answer a mention; never raises.

        Provider failures and unexpected errors are logged and turned into
        the generic failure reply. Spend recorded before a failure stays
        recorded; memory is left untouched.
        """
        logger.info(
            "Mention from %s in %s", request.requester_id, request.conversation_id
        )
        try:
            async with self.memory.lock(request.conversation_id):
                return await self._run(request, messenger)
        except Exception:
            logger.exception(
                "Error handling mention from %s in %s",
                request.requester_id, request.conversation_id
            )
            try:
                await self.delivery.notify(self.config.replies.failure, messenger)
            except Exception:
                logger.exception("Failed to deliver failure notice")
            return Outcome.FAILED

    async def _run(self, request: MentionRequest, messenger: Messenger) -> Outcome:
        replies = self.config.replies
        day = utc_day(self.clock())

        # BUDGET_CHECK
        decision = self.gate.authorize(request.requester_id, request.requester_roles, day)
        try:
            decision.raise_for_denial()
        except BudgetExceeded as e:
            logger.info("Budget gate refused %s: %s", request.requester_id, e)
            text = replies.budget_global if e.reason is DenialReason.GLOBAL_EXHAUSTED else replies.budget_user
            await self.delivery.notify(text, messenger)
            return Outcome.BUDGET_EXCEEDED

        # BUILD_PROMPT
        exchange = _Exchange(request=request, day=day, user_text=strip_mentions(request.content))
        messages = self._build_messages(request.conversation_id, exchange.user_text)
        logger.debug("Prompt chars: %d", sum(len(m["content"]) for m in messages))

        # CALL / CONTINUE
        chunks = []
        continuations = 0
        truncated = False
        while True:
            completion = await self._call(exchange, messages)
            if completion.finish_reason == FINISH_CONTENT_FILTER:
                logger.info("Completion for %s rejected by content filter", request.requester_id)
                await self.delivery.notify(replies.rejected, messenger)
                return Outcome.REJECTED

            chunks.append(completion.text)
            if completion.finish_reason != FINISH_LENGTH:
                break
            if continuations >= self.config.completion.max_continuations:
                logger.warning(
                    "Reply for %s still truncated after %d continuation(s); stopping",
                    request.requester_id, continuations
                )
                truncated = True
                break
            continuations += 1
            messages.append({"role": "assistant", "content": completion.text})
            messages.append({"role": "user", "content": CONTINUE_PROMPT})

        full_reply = "".join(chunks)

        # EMPTY
        if not full_reply.strip():
            await self.delivery.notify(replies.empty, messenger)
            return Outcome.EMPTY

        # SUMMARIZE
        notice = f"\n{replies.truncated}" if truncated else ""
        limit = max(self.config.completion.display_limit - len(notice), 1)
        if len(full_reply) > limit:
            full_reply = await self._summarize(exchange, full_reply, limit)

        # DONE
        self.memory.append(request.conversation_id, "user", exchange.user_text)
        self.memory.append(request.conversation_id, "assistant", full_reply)

        await self.delivery.finalize(full_reply + notice, messenger)

        entry = self.ledger.get_entry(day)
        logger.info(
            "Daily spend: $%.6f after %d call(s) for %s",
            entry.total_usd, exchange.calls, request.requester_id
        )
        return Outcome.TRUNCATED if truncated else Outcome.DONE

    def _build_messages(self, conversation_id: str, user_text: str) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self.config.system_prompt}]
        messages.extend(turn.to_message() for turn in self.memory.get(conversation_id))
        messages.append({"role": "user", "content": user_text})
        return messages

    async def _call(self, exchange: _Exchange, messages: Sequence[Dict[str, str]]) -> Completion:
        completion = await self.provider.complete(
            list(messages), self.config.completion.max_output_tokens
        )
        exchange.calls += 1
        await self._record(exchange, completion)
        return completion

    async def _record(self, exchange: _Exchange, completion: Completion) -> None:
        cost = calculate_cost(completion.model, completion.usage, self.config.pricing)
        await self.ledger.record_spend(exchange.day, exchange.request.requester_id, cost)
        usage = completion.usage
        logger.info(
            "Tokens in: %s, out: %s, cost: $%.6f (%s, finish=%s)",
            usage.prompt_tokens, usage.completion_tokens, cost,
            completion.api, completion.finish_reason
        )

    async def _summarize(self, exchange: _Exchange, text: str, limit: int) -> str:
        logger.info("Reply is %d chars, over the %d limit; summarizing", len(text), limit)
        messages = [
            {"role": "system", "content": SUMMARY_INSTRUCTIONS.format(limit=limit)},
            {"role": "user", "content": text},
        ]
        completion = await self._call(exchange, messages)
        summary = completion.text
        if not summary.strip() or completion.finish_reason == FINISH_CONTENT_FILTER:
            logger.warning("Summarization returned nothing usable; cutting reply to %d chars", limit)
            return text[:limit]
        if len(summary) > limit:
            logger.warning("Summary is still %d chars; cutting to %d", len(summary), limit)
            return summary[:limit]
        return summary
