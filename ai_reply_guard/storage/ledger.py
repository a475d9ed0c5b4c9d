"""
Budget ledger persistence.

Per-day, per-user spend kept in memory and written through to a JSON
document after every mutation.
"""

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union

from .models import DailyCostEntry, to_amount

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = "cost-tracker.json"


def utc_day(now: Optional[datetime] = None) -> str:
    """Ledger key for the given instant; budgets reset at midnight UTC."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%d")


class BudgetLedger:
    """Append-only spend ledger keyed by day.

    In-memory state is authoritative for the life of the process. Writes
    are serialized through a single lock so concurrent exchanges cannot
    lose each other's updates.
    """

    def __init__(self, path: str = DEFAULT_LEDGER_PATH):
        """Initialize the ledger with a document path.

        Args:
            path: Path to the JSON ledger document
        """
        self.path = Path(path)
        self._entries: Dict[str, DailyCostEntry] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    def load(self) -> None:
        """Read the persisted ledger; a missing file starts an empty ledger.

        Raises:
            ValueError: If the document exists but is not a valid ledger
        """
        entries: Dict[str, DailyCostEntry] = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid ledger document {self.path}: {e}")
            if not isinstance(raw, dict):
                raise ValueError(f"Ledger document {self.path} must be an object")
            for day, data in raw.items():
                entries[day] = DailyCostEntry.from_document(data, day)
            logger.info("Loaded ledger %s with %d day(s)", self.path, len(entries))
        else:
            logger.info("No ledger at %s, starting empty", self.path)
        self._entries = entries
        self._loaded = True

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def get_entry(self, day: str) -> DailyCostEntry:
        """Return a copy of the entry for a day, zero if nothing was spent."""
        self._ensure_loaded()
        entry = self._entries.get(day)
        return entry.copy() if entry is not None else DailyCostEntry()

    def days(self) -> List[str]:
        """Days with recorded spend, oldest first."""
        self._ensure_loaded()
        return sorted(self._entries)

    async def record_spend(self, day: str, user_id: str, amount: Union[float, Decimal]) -> DailyCostEntry:
        """Add spend for a user and persist the whole ledger.

        A failed write is logged and does not undo the in-memory update;
        the next successful write carries the missed delta.

        Returns:
            Copy of the updated entry
        """
        amount = to_amount(amount)
        if amount < 0:
            raise ValueError("amount cannot be negative")
        async with self._lock:
            self._ensure_loaded()
            entry = self._entries.setdefault(day, DailyCostEntry())
            entry.add(user_id, amount)
            self._persist()
            return entry.copy()

    def save(self) -> bool:
        """Write the current ledger; returns False if the write failed."""
        self._ensure_loaded()
        return self._persist()

    def _persist(self) -> bool:
        document = {day: entry.to_document() for day, entry in sorted(self._entries.items())}
        try:
            _atomic_write_json(self.path, document)
        except OSError:
            logger.exception("Failed to persist ledger to %s; spend kept in memory only", self.path)
            return False
        return True


def _atomic_write_json(path: Path, document: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(document, indent=2) + "\n")
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)
