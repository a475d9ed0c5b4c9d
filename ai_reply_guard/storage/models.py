"""
Data models for storage layer.

Defines the ledger entry and its on-disk representation.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

ZERO = Decimal("0")


def to_amount(value: Any) -> Decimal:
    """Convert a dollar amount to Decimal without binary float noise."""
    if isinstance(value, bool):
        raise TypeError("amount must be numeric")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    raise TypeError("amount must be numeric")


@dataclass
class DailyCostEntry:
    """Accumulated spend for one UTC day.

    Amounts are held as Decimal and the total is derived from the
    per-user amounts, so the two can never disagree.
    """
    users: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def total_usd(self) -> Decimal:
        return sum(self.users.values(), ZERO)

    def user_spend(self, user_id: str) -> Decimal:
        return self.users.get(user_id, ZERO)

    def add(self, user_id: str, amount: Decimal) -> None:
        self.users[user_id] = self.user_spend(user_id) + amount

    def copy(self) -> "DailyCostEntry":
        return DailyCostEntry(users=dict(self.users))

    def to_document(self) -> Dict[str, Any]:
        """Serialize using the ledger file's field names."""
        return {
            "totalUSD": float(self.total_usd),
            "users": {user_id: float(amount) for user_id, amount in self.users.items()}
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any], day: str) -> "DailyCostEntry":
        """Parse one day of the ledger document.

        The stored totalUSD is validated but not trusted; the total is
        recomputed from the users.

        Raises:
            ValueError: If the entry is malformed
        """
        if not isinstance(data, dict):
            raise ValueError(f"Ledger entry for {day} must be an object")
        users_data = data.get("users", {})
        if not isinstance(users_data, dict):
            raise ValueError(f"Ledger entry for {day} has invalid 'users'")
        try:
            users = {str(user_id): to_amount(amount) for user_id, amount in users_data.items()}
            to_amount(data.get("totalUSD", 0))
        except (TypeError, InvalidOperation):
            raise ValueError(f"Ledger entry for {day} contains non-numeric amounts")
        return cls(users=users)
