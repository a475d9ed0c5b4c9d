"""
Budget guardrails.

Decides whether a mention may reach the model at all.

Enforcement Order:
1. Global daily budget - Shared by every requester
2. Per-user daily limit - Derived from the first matching role
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, auto
from typing import Iterable, Optional, Sequence

from ai_reply_guard.storage.ledger import BudgetLedger
from ai_reply_guard.storage.models import to_amount


class DenialReason(Enum):
    """Why a request was refused, in order of precedence."""
    GLOBAL_EXHAUSTED = auto()
    USER_EXHAUSTED = auto()


class BudgetExceeded(Exception):
    """Raised when a request is refused by the budget gate."""
    def __init__(self, message: str, reason: DenialReason):
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class RoleLimit:
    """Per-user daily ceiling granted by a role."""
    role: str
    limit: float


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget check against the pre-call ledger state."""
    allowed: bool
    reason: Optional[DenialReason]
    total_spend: Decimal
    user_spend: Decimal
    user_limit: float

    def raise_for_denial(self) -> None:
        """Raise BudgetExceeded if the request was refused."""
        if self.reason is DenialReason.GLOBAL_EXHAUSTED:
            raise BudgetExceeded(
                f"Daily budget exhausted (${self.total_spend:.4f} spent)", self.reason
            )
        if self.reason is DenialReason.USER_EXHAUSTED:
            raise BudgetExceeded(
                f"User limit of ${self.user_limit:.4f} reached (${self.user_spend:.4f} spent)",
                self.reason
            )


class BudgetGate:
    """Entry guard combining the global budget and role-based user limits."""

    def __init__(
        self,
        ledger: BudgetLedger,
        daily_budget: float,
        role_limits: Sequence[RoleLimit],
        default_limit: float
    ):
        self.ledger = ledger
        self.daily_budget = daily_budget
        self.role_limits = tuple(role_limits)
        self.default_limit = default_limit

    def effective_limit(self, requester_roles: Iterable[str]) -> float:
        """Limit of the first table role the requester holds, else default."""
        held = set(requester_roles)
        for role_limit in self.role_limits:
            if role_limit.role in held:
                return role_limit.limit
        return self.default_limit

    def authorize(
        self,
        requester_id: str,
        requester_roles: Iterable[str],
        day: str
    ) -> BudgetDecision:
        """Check both ceilings for a requester on a day.

        Args:
            requester_id: Platform user id
            requester_roles: Role names the requester holds
            day: Ledger day key

        Returns:
            BudgetDecision; the global check takes precedence over the user check
        """
        entry = self.ledger.get_entry(day)
        user_spend = entry.user_spend(requester_id)
        user_limit = self.effective_limit(requester_roles)

        reason = None
        if entry.total_usd >= to_amount(self.daily_budget):
            reason = DenialReason.GLOBAL_EXHAUSTED
        elif user_spend >= to_amount(user_limit):
            reason = DenialReason.USER_EXHAUSTED

        return BudgetDecision(
            allowed=reason is None,
            reason=reason,
            total_spend=entry.total_usd,
            user_spend=user_spend,
            user_limit=user_limit
        )
