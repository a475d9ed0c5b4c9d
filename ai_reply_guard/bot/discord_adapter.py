"""
Discord glue for the mention handler.

Routes messages that mention the bot into the orchestrator and delivers
replies with restricted mentions.
"""

import logging
import os
from typing import Optional, Sequence

import discord

from ai_reply_guard.config.loader import BotConfig
from ai_reply_guard.core.delivery import ResponseDelivery
from ai_reply_guard.core.guardrails import BudgetGate
from ai_reply_guard.core.memory import ConversationMemory
from ai_reply_guard.core.orchestrator import CompletionOrchestrator, MentionRequest, Outcome
from ai_reply_guard.sdk.openai_client import GuardedOpenAI
from ai_reply_guard.storage.ledger import BudgetLedger

logger = logging.getLogger(__name__)


class DiscordMessenger:
    """Replies to a discord message; only allow-listed roles are pinged."""

    def __init__(self, message: discord.Message):
        self.message = message

    async def send(self, content: str, allowed_role_ids: Sequence[str]) -> None:
        allowed = discord.AllowedMentions(
            everyone=False,
            users=False,
            roles=[discord.Object(id=int(role_id)) for role_id in allowed_role_ids],
            replied_user=True
        )
        await self.message.reply(content, allowed_mentions=allowed)


def build_request(message: discord.Message, config: BotConfig) -> MentionRequest:
    """Translate a discord message into a mention request."""
    member_roles = getattr(message.author, "roles", None) or []
    return MentionRequest(
        conversation_id=str(message.channel.id),
        requester_id=str(message.author.id),
        content=message.content or "",
        requester_roles=config.roles_for_ids(role.id for role in member_roles)
    )


def build_orchestrator(config: BotConfig, provider: Optional[GuardedOpenAI] = None) -> CompletionOrchestrator:
    """Construct the process-wide stores and the orchestrator."""
    ledger = BudgetLedger(config.ledger_path)
    ledger.load()
    gate = BudgetGate(
        ledger=ledger,
        daily_budget=config.budget.daily,
        role_limits=config.budget.role_limits,
        default_limit=config.budget.default_limit
    )
    return CompletionOrchestrator(
        config=config,
        provider=provider or GuardedOpenAI(
            model=config.model,
            timeout_seconds=config.completion.timeout_seconds
        ),
        ledger=ledger,
        memory=ConversationMemory(config.memory_turns),
        gate=gate,
        delivery=ResponseDelivery(config.privileged_role_id, config.placeholder)
    )


class MentionBot(discord.Client):
    """Discord client answering messages that mention it."""

    def __init__(self, config: BotConfig, orchestrator: Optional[CompletionOrchestrator] = None, **kwargs):
        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        super().__init__(intents=intents, **kwargs)
        self.config = config
        self.api_key_configured = bool(os.getenv("OPENAI_API_KEY"))
        self.orchestrator = orchestrator
        if self.orchestrator is None and self.api_key_configured:
            self.orchestrator = build_orchestrator(config)

    async def on_ready(self):
        logger.info("Logged in as %s", self.user)

    async def on_message(self, message: discord.Message) -> Optional[Outcome]:
        if message.author.bot or self.user is None or not self.user.mentioned_in(message):
            return None
        if message.mention_everyone:
            return None
        messenger = DiscordMessenger(message)
        if self.orchestrator is None:
            logger.error("Missing OPENAI_API_KEY; cannot answer mention")
            await messenger.send(self.config.replies.not_configured, ())
            return None
        return await self.orchestrator.handle_mention(build_request(message, self.config), messenger)
