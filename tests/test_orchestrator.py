"""
Unit tests for the completion orchestrator.

Drives full mention exchanges against a scripted provider and a
recording messenger.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from unittest.mock import patch

import pytest

from ai_reply_guard.config.loader import BotConfig, BudgetConfig, CompletionConfig, ReplyTexts
from ai_reply_guard.core.delivery import ResponseDelivery
from ai_reply_guard.core.guardrails import BudgetGate, RoleLimit
from ai_reply_guard.core.memory import ConversationMemory
from ai_reply_guard.core.orchestrator import (
    CONTINUE_PROMPT,
    CompletionOrchestrator,
    MentionRequest,
    Outcome,
    strip_mentions,
)
from ai_reply_guard.core.pricing import ModelPricing, PricingTable
from ai_reply_guard.core.token_counter import TokenUsage
from ai_reply_guard.sdk.openai_client import Completion, ProviderError
from ai_reply_guard.storage.ledger import BudgetLedger


DAY = "2024-05-01"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
USAGE = TokenUsage(prompt_tokens=1_000_000, completion_tokens=1_000_000)  # $3 at test rates


class ScriptedProvider:
    """Returns queued completions and records the messages it was sent."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: List[List[dict]] = []

    async def complete(self, messages, max_output_tokens, model: Optional[str] = None):
        self.calls.append([dict(m) for m in messages])
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingMessenger:
    def __init__(self):
        self.sent = []

    async def send(self, content, allowed_role_ids):
        self.sent.append((content, tuple(allowed_role_ids)))


def completion(text: str, finish_reason: str = "stop", usage: TokenUsage = USAGE) -> Completion:
    return Completion(text=text, finish_reason=finish_reason, usage=usage, model="test-model")


def make_config(**overrides) -> BotConfig:
    options = dict(
        system_prompt="You are the workshop helper.",
        memory_turns=3,
        budget=BudgetConfig(
            daily=100.0,
            role_limits=(RoleLimit("trustee", 50.0), RoleLimit("member", 20.0)),
            default_limit=10.0
        ),
        pricing=PricingTable(
            prices={"test-model": ModelPricing(Decimal("1"), Decimal("2"))},
            default=ModelPricing(Decimal("1"), Decimal("2"))
        ),
        role_ids={"trustee": "999", "member": "111"},
        privileged_role="trustee",
        model="test-model",
        completion=CompletionConfig(max_output_tokens=100, max_continuations=5, display_limit=2000),
        replies=ReplyTexts(),
    )
    options.update(overrides)
    return BotConfig(**options)


class TestStripMentions:
    def test_strips_user_mentions(self):
        assert strip_mentions("<@123> how do I <@!456> book?  ") == "how do I  book?"

    def test_role_mentions_kept(self):
        assert strip_mentions("<@&999> hi") == "<@&999> hi"

    def test_empty(self):
        assert strip_mentions("<@123>") == ""


class TestCompletionOrchestrator:
    """Test the mention exchange state machine."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.ledger = BudgetLedger(os.path.join(self.temp_dir, "cost-tracker.json"))
        self.memory = ConversationMemory(memory_turns=3)
        self.messenger = RecordingMessenger()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _orchestrator(self, provider, config: Optional[BotConfig] = None) -> CompletionOrchestrator:
        config = config or make_config()
        gate = BudgetGate(
            ledger=self.ledger,
            daily_budget=config.budget.daily,
            role_limits=config.budget.role_limits,
            default_limit=config.budget.default_limit
        )
        return CompletionOrchestrator(
            config=config,
            provider=provider,
            ledger=self.ledger,
            memory=self.memory,
            gate=gate,
            delivery=ResponseDelivery(config.privileged_role_id, config.placeholder),
            clock=lambda: NOW
        )

    def _request(self, content="<@42> How do I book the lathe?", user="7", roles=("member",)):
        return MentionRequest(
            conversation_id="channel-1",
            requester_id=user,
            content=content,
            requester_roles=tuple(roles)
        )

    @pytest.mark.asyncio
    async def test_simple_reply(self):
        provider = ScriptedProvider(completion("Use the booking form."))
        orchestrator = self._orchestrator(provider)

        outcome = await orchestrator.handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.DONE
        assert self.messenger.sent == [("Use the booking form.", ("999",))]
        assert provider.calls[0] == [
            {"role": "system", "content": "You are the workshop helper."},
            {"role": "user", "content": "How do I book the lathe?"},
        ]
        turns = self.memory.get("channel-1")
        assert [(t.role, t.content) for t in turns] == [
            ("user", "How do I book the lathe?"),
            ("assistant", "Use the booking form."),
        ]
        assert self.ledger.get_entry(DAY).users == {"7": 3.0}

    @pytest.mark.asyncio
    async def test_prompt_includes_memory_window(self):
        self.memory.append("channel-1", "user", "earlier question")
        self.memory.append("channel-1", "assistant", "earlier answer")
        provider = ScriptedProvider(completion("ok"))

        await self._orchestrator(provider).handle_mention(self._request(content="again"), self.messenger)

        assert [m["content"] for m in provider.calls[0]] == [
            "You are the workshop helper.", "earlier question", "earlier answer", "again"
        ]

    @pytest.mark.asyncio
    async def test_empty_input_still_calls_model(self):
        provider = ScriptedProvider(completion("Hello!"))

        outcome = await self._orchestrator(provider).handle_mention(
            self._request(content="<@42>   "), self.messenger
        )

        assert outcome is Outcome.DONE
        assert provider.calls[0][-1] == {"role": "user", "content": ""}

    @pytest.mark.asyncio
    async def test_length_continuation_concatenates_chunks(self):
        provider = ScriptedProvider(
            completion("First ", "length"),
            completion("second ", "length"),
            completion("third.", "stop"),
        )

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.DONE
        assert self.messenger.sent == [("First second third.", ("999",))]
        assert len(provider.calls) == 3
        assert provider.calls[1][-2:] == [
            {"role": "assistant", "content": "First "},
            {"role": "user", "content": CONTINUE_PROMPT},
        ]
        assert provider.calls[2][-4:] == [
            {"role": "assistant", "content": "First "},
            {"role": "user", "content": CONTINUE_PROMPT},
            {"role": "assistant", "content": "second "},
            {"role": "user", "content": CONTINUE_PROMPT},
        ]
        # Cost recorded once per call
        assert self.ledger.get_entry(DAY).total_usd == Decimal("9.0")
        assert self.memory.get("channel-1")[-1].content == "First second third."

    @pytest.mark.asyncio
    async def test_continuation_cap_truncates(self):
        config = make_config(
            completion=CompletionConfig(max_output_tokens=100, max_continuations=2)
        )
        provider = ScriptedProvider(*[completion(f"c{i} ", "length") for i in range(5)])

        outcome = await self._orchestrator(provider, config).handle_mention(
            self._request(), self.messenger
        )

        assert outcome is Outcome.TRUNCATED
        assert len(provider.calls) == 3
        content, _ = self.messenger.sent[0]
        assert content == "c0 c1 c2 \n" + ReplyTexts().truncated
        assert self.memory.get("channel-1")[-1].content == "c0 c1 c2 "
        assert self.ledger.get_entry(DAY).total_usd == Decimal("9.0")

    @pytest.mark.asyncio
    async def test_content_filter_rejects_without_memory(self):
        provider = ScriptedProvider(completion("", "content_filter"))

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.REJECTED
        assert self.messenger.sent == [(ReplyTexts().rejected, ())]
        assert self.memory.get("channel-1") == ()
        assert self.ledger.get_entry(DAY).total_usd == Decimal("3.0")
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_content_filter_during_continuation_discards_everything(self):
        provider = ScriptedProvider(
            completion("partial", "length"),
            completion("", "content_filter"),
        )

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.REJECTED
        assert self.memory.get("channel-1") == ()
        assert self.ledger.get_entry(DAY).total_usd == Decimal("6.0")

    @pytest.mark.asyncio
    async def test_empty_reply(self):
        provider = ScriptedProvider(completion("   "))

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.EMPTY
        assert self.messenger.sent == [(ReplyTexts().empty, ())]
        assert self.memory.get("channel-1") == ()
        assert self.ledger.get_entry(DAY).total_usd == Decimal("3.0")

    @pytest.mark.asyncio
    async def test_long_reply_is_summarized_once(self):
        long_text = "x" * 2500
        provider = ScriptedProvider(
            completion(long_text),
            completion("Short summary."),
        )

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.DONE
        assert len(provider.calls) == 2
        summary_call = provider.calls[1]
        assert summary_call[0]["role"] == "system"
        assert "2000" in summary_call[0]["content"]
        assert summary_call[1] == {"role": "user", "content": long_text}
        assert self.messenger.sent == [("Short summary.", ("999",))]
        assert self.memory.get("channel-1")[-1].content == "Short summary."
        assert self.ledger.get_entry(DAY).total_usd == Decimal("6.0")

    @pytest.mark.asyncio
    async def test_summary_still_too_long_is_cut_to_limit(self):
        provider = ScriptedProvider(
            completion("y" * 2500),
            completion("z" * 2100),
        )

        await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert len(provider.calls) == 2
        assert self.messenger.sent[0][0] == "z" * 2000
        assert self.memory.get("channel-1")[-1].content == "z" * 2000

    @pytest.mark.asyncio
    async def test_truncation_notice_fits_display_limit(self):
        config = make_config(
            completion=CompletionConfig(max_output_tokens=100, max_continuations=0, display_limit=2000)
        )
        notice = "\n" + ReplyTexts().truncated
        room = 2000 - len(notice)
        provider = ScriptedProvider(
            completion("a" * 1990, "length"),
            completion("s" * 1990),
        )

        outcome = await self._orchestrator(provider, config).handle_mention(
            self._request(), self.messenger
        )

        assert outcome is Outcome.TRUNCATED
        assert str(room) in provider.calls[1][0]["content"]
        content, _ = self.messenger.sent[0]
        assert len(content) == 2000
        assert content == "s" * room + notice
        assert self.memory.get("channel-1")[-1].content == "s" * room

    @pytest.mark.asyncio
    async def test_blank_summary_falls_back_to_cut_reply(self):
        provider = ScriptedProvider(
            completion("y" * 2500),
            completion(""),
        )

        await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert self.messenger.sent[0][0] == "y" * 2000

    @pytest.mark.asyncio
    async def test_reply_at_limit_is_not_summarized(self):
        provider = ScriptedProvider(completion("w" * 2000))

        await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_placeholder_substituted_but_memory_keeps_raw_text(self):
        provider = ScriptedProvider(completion("Ask [TRUSTEE] or [TRUSTEE]."))

        await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert self.messenger.sent == [("Ask <@&999> or <@&999>.", ("999",))]
        assert self.memory.get("channel-1")[-1].content == "Ask [TRUSTEE] or [TRUSTEE]."

    @pytest.mark.asyncio
    async def test_global_budget_exhausted(self):
        await self.ledger.record_spend(DAY, "someone-else", 100.0)
        provider = ScriptedProvider()

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.BUDGET_EXCEEDED
        assert self.messenger.sent == [(ReplyTexts().budget_global, ())]
        assert provider.calls == []
        assert self.ledger.get_entry(DAY).total_usd == 100.0

    @pytest.mark.asyncio
    async def test_user_limit_exhausted(self):
        await self.ledger.record_spend(DAY, "7", 20.0)
        provider = ScriptedProvider()

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.BUDGET_EXCEEDED
        assert self.messenger.sent == [(ReplyTexts().budget_user, ())]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_trustee_has_higher_limit(self):
        await self.ledger.record_spend(DAY, "7", 20.0)
        provider = ScriptedProvider(completion("ok"))

        outcome = await self._orchestrator(provider).handle_mention(
            self._request(roles=("member", "trustee")), self.messenger
        )

        assert outcome is Outcome.DONE

    @pytest.mark.asyncio
    async def test_provider_failure_sends_generic_reply(self):
        provider = ScriptedProvider(ProviderError("boom"))

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.FAILED
        assert self.messenger.sent == [(ReplyTexts().failure, ())]
        assert self.memory.get("channel-1") == ()
        assert self.ledger.days() == []

    @pytest.mark.asyncio
    async def test_failure_mid_continuation_keeps_recorded_cost(self):
        provider = ScriptedProvider(
            completion("partial", "length"),
            ProviderError("connection reset"),
        )

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.FAILED
        assert self.memory.get("channel-1") == ()
        assert self.ledger.get_entry(DAY).total_usd == Decimal("3.0")

    @pytest.mark.asyncio
    async def test_failure_notice_error_is_swallowed(self):
        class BrokenMessenger:
            async def send(self, content, allowed_role_ids):
                raise RuntimeError("discord down")

        provider = ScriptedProvider(completion("fine"))

        outcome = await self._orchestrator(provider).handle_mention(self._request(), BrokenMessenger())

        assert outcome is Outcome.FAILED

    @pytest.mark.asyncio
    async def test_ledger_write_failure_does_not_block_reply(self):
        provider = ScriptedProvider(completion("still answered"))

        with patch(
            "ai_reply_guard.storage.ledger._atomic_write_json",
            side_effect=OSError("disk full")
        ):
            outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.DONE
        assert self.messenger.sent == [("still answered", ("999",))]
        assert self.ledger.get_entry(DAY).total_usd == Decimal("3.0")

    @pytest.mark.asyncio
    async def test_missing_usage_records_zero_cost(self):
        provider = ScriptedProvider(completion("answer", usage=TokenUsage()))

        outcome = await self._orchestrator(provider).handle_mention(self._request(), self.messenger)

        assert outcome is Outcome.DONE
        assert self.ledger.get_entry(DAY).users == {"7": 0.0}

    @pytest.mark.asyncio
    async def test_same_conversation_is_serialized(self):
        release = asyncio.Event()
        order = []

        class SlowProvider:
            async def complete(self, messages, max_output_tokens, model=None):
                order.append(messages[-1]["content"])
                if messages[-1]["content"] == "first":
                    await release.wait()
                return completion(f"re: {messages[-1]['content']}")

        orchestrator = self._orchestrator(SlowProvider())
        first = asyncio.create_task(
            orchestrator.handle_mention(self._request(content="first"), self.messenger)
        )
        await asyncio.sleep(0)
        second = asyncio.create_task(
            orchestrator.handle_mention(self._request(content="second"), self.messenger)
        )
        await asyncio.sleep(0.01)
        assert order == ["first"]

        release.set()
        await asyncio.gather(first, second)

        assert order == ["first", "second"]
        assert [t.content for t in self.memory.get("channel-1")] == [
            "first", "re: first", "second", "re: second"
        ]
