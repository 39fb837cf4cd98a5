"""Credit ledger: per-user credit state with optimistic concurrency.

Every mutation of a ledger entry is conditioned on the entry's `version` and
bumps it, so concurrent debits, lazy period rollovers and webhook
reconciliation never overwrite each other.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from app.billing.models import LedgerEntry, PeriodUsage, Plan, SubscriptionInfoResponse, SubscriptionStatus
from app.core.config import Settings, get_settings
from app.core.exceptions import InsufficientCreditsException, LedgerContentionError

logger = logging.getLogger(__name__)

MAX_PAST_PERIODS = 12


def _now() -> datetime:
    return datetime.utcnow()


class CreditLedger:
    def __init__(self, db: Database, settings: Optional[Settings] = None):
        self._entries = db["credit_ledger"]
        self._transactions = db["credit_transactions"]
        self.settings = settings or get_settings()

    @property
    def period(self) -> timedelta:
        return timedelta(days=int(self.settings.CREDIT_PERIOD_DAYS))

    def plan_limit(self, plan: Plan) -> int:
        return int(self.settings.PLAN_CREDIT_LIMITS[plan.value])

    def _new_entry(self, user_id: str, now: datetime) -> LedgerEntry:
        return LedgerEntry(
            user_id=user_id,
            plan=Plan.FREE,
            status=SubscriptionStatus.ACTIVE,
            credit_limit=self.plan_limit(Plan.FREE),
            credits_used=0,
            period_start=now,
            period_end=now + self.period,
            created_at=now,
            updated_at=now,
        )

    def load_or_create(self, user_id: str, now: Optional[datetime] = None) -> LedgerEntry:
        """Read the stored entry as-is, creating the free entry on first access."""
        now = now or _now()
        doc = self._entries.find_one({"_id": user_id})
        if doc:
            return LedgerEntry.from_document(doc)
        entry = self._new_entry(user_id, now)
        try:
            self._entries.insert_one(entry.to_document())
            logger.info(f"Ledger entry created for user {user_id} (plan=free)")
            return entry
        except DuplicateKeyError:
            # Created concurrently by another request.
            return LedgerEntry.from_document(self._entries.find_one({"_id": user_id}))

    def replace_if_version(self, entry: LedgerEntry, expected_version: int) -> Optional[LedgerEntry]:
        """Write `entry` only if the stored version is still `expected_version`."""
        entry = entry.model_copy(update={"version": expected_version + 1, "updated_at": _now()})
        doc = entry.to_document()
        doc.pop("_id")
        res = self._entries.update_one({"_id": entry.user_id, "version": expected_version}, {"$set": doc})
        return entry if res.modified_count == 1 else None

    def _rolled_forward(self, entry: LedgerEntry, now: datetime) -> LedgerEntry:
        period = self.period
        start, end = entry.period_start, entry.period_end
        if end <= start:
            end = start + period
        if now >= end:
            skipped = (now - end) // period
            start = end + skipped * period
            end = start + period
        return self.moved_to_period(entry, start, end)

    def moved_to_period(self, entry: LedgerEntry, start: datetime, end: datetime) -> LedgerEntry:
        """
        Copy of `entry` for the credit period [start, end).

        Usage is tracked per period: leaving a period remembers what was used in
        it and entering one restores its usage (zero for a period never seen).
        Usage therefore depends only on which period is current, not on the
        periods visited on the way there.
        """
        if start == entry.period_start:
            return entry.model_copy(update={"period_end": end})
        restored = 0
        kept = []
        for usage in entry.past_usage:
            if usage.period_start == start:
                restored = usage.credits_used
            elif usage.period_start != entry.period_start:
                kept.append(usage)
        kept.append(PeriodUsage(period_start=entry.period_start, credits_used=entry.credits_used))
        return entry.model_copy(
            update={
                "period_start": start,
                "period_end": end,
                "credits_used": restored,
                "past_usage": kept[-MAX_PAST_PERIODS:],
            }
        )

    def get_entry(self, user_id: str, now: Optional[datetime] = None) -> LedgerEntry:
        """Current entry, rolling the credit period forward lazily once it has ended."""
        now = now or _now()
        for _ in range(int(self.settings.LEDGER_CAS_MAX_RETRIES)):
            entry = self.load_or_create(user_id, now)
            if now < entry.period_end:
                return entry
            rolled = self.replace_if_version(self._rolled_forward(entry, now), entry.version)
            if rolled:
                logger.info(
                    f"Credit period rolled over for user {user_id}: "
                    f"{rolled.period_start.isoformat()} - {rolled.period_end.isoformat()}"
                )
                self._record(user_id, "period_reset", 0, None, 0)
                return rolled
        raise LedgerContentionError(f"Ledger entry for {user_id} is too contended")

    def has_available(self, user_id: str, amount: int) -> bool:
        entry = self.get_entry(user_id)
        return entry.credits_used + amount <= entry.credit_limit

    def debit(
        self,
        user_id: str,
        amount: int,
        reference: Optional[str] = None,
        type: str = "job",
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """
        Atomically consume `amount` credits.

        Raises InsufficientCreditsException without mutating anything when the
        debit would exceed the limit. A debit whose `reference` was already
        applied is a no-op, which makes retried debits safe.
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")

        for _ in range(int(self.settings.LEDGER_CAS_MAX_RETRIES)):
            entry = self.get_entry(user_id, now)
            if reference and reference in entry.recent_debits:
                logger.info(f"Debit {reference} already applied for user {user_id}")
                return entry
            if entry.credits_used + amount > entry.credit_limit:
                raise InsufficientCreditsException(required=amount, available=entry.credits_remaining)

            update: dict = {"$inc": {"credits_used": amount, "version": 1}, "$set": {"updated_at": _now()}}
            if reference:
                update["$push"] = {
                    "recent_debits": {"$each": [reference], "$slice": -int(self.settings.LEDGER_RECENT_DEBITS)}
                }
            doc = self._entries.find_one_and_update(
                {"_id": user_id, "version": entry.version},
                update,
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                continue
            after = LedgerEntry.from_document(doc)
            logger.info(f"Debited {amount} credit(s) from user {user_id} ({after.credits_used}/{after.credit_limit})")
            self._record(user_id, type, amount, reference, after.credits_used)
            return after
        raise LedgerContentionError(f"Ledger entry for {user_id} is too contended")

    def subscription_info(self, user_id: str) -> SubscriptionInfoResponse:
        return SubscriptionInfoResponse.from_entry(self.get_entry(user_id))

    def _record(self, user_id: str, type: str, amount: int, reference: Optional[str], credits_after: int) -> None:
        try:
            self._transactions.insert_one(
                {
                    "user_id": user_id,
                    "type": type,
                    "amount": amount,
                    "reference": reference,
                    "credits_after": credits_after,
                    "created_at": _now(),
                }
            )
        except Exception as e:
            # Audit trail must never break the debit that already happened.
            logger.warning(f"Failed to record credit transaction for user {user_id}: {e}")
