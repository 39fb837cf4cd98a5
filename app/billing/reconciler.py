"""Entitlement reconciler: applies billing webhook events to ledger entries.

Each event maps to an absolute entitlement snapshot and is applied
last-writer-wins on (timestamp, event_id). Duplicate and causally older
events are no-ops, so any delivery order converges to the same state.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from pymongo.database import Database

from app.billing.ledger import CreditLedger
from app.billing.models import LedgerEntry, Plan, SubscriptionStatus, WebhookEvent
from app.core.exceptions import LedgerContentionError

logger = logging.getLogger(__name__)

ACTIVATING_EVENTS = {
    "INITIAL_PURCHASE",
    "RENEWAL",
    "UNCANCELLATION",
    "PRODUCT_CHANGE",
    "SUBSCRIPTION_EXTENDED",
    "NON_RENEWING_PURCHASE",
}
DOWNGRADE_EVENTS = {"CANCELLATION", "EXPIRATION"}
STATUS_EVENTS = {
    "BILLING_ISSUE": SubscriptionStatus.BILLING_ISSUE,
    "SUBSCRIPTION_PAUSED": SubscriptionStatus.PAUSED,
}
MARKER_ONLY_EVENTS = {"TEST", "TRANSFER"}


def carries_entitlement(event: WebhookEvent) -> bool:
    event_type = (event.type or "").upper()
    return event_type in ACTIVATING_EVENTS or event_type in DOWNGRADE_EVENTS or event_type in STATUS_EVENTS


def _now() -> datetime:
    return datetime.utcnow()


class EntitlementReconciler:
    def __init__(self, db: Database, ledger: Optional[CreditLedger] = None):
        self._events = db["billing_events"]
        self.ledger = ledger or CreditLedger(db)

    def apply(self, event: WebhookEvent) -> bool:
        """Apply `event`; returns False when it was a duplicate or stale (no-op)."""
        self._record_event(event)
        if not carries_entitlement(event):
            if (event.type or "").upper() not in MARKER_ONLY_EVENTS:
                logger.warning(f"Unhandled webhook event type: {event.type}")
            logger.info(f"Webhook event {event.event_id} ({event.type}) recorded without entitlement change")
            return False

        for _ in range(int(self.ledger.settings.LEDGER_CAS_MAX_RETRIES)):
            entry = self.ledger.load_or_create(event.user_id)

            if entry.last_webhook_event_id == event.event_id:
                logger.info(f"Duplicate webhook event skipped: {event.event_id}")
                return False
            if entry.last_webhook_event_at is not None and event.order_key <= (
                entry.last_webhook_event_at,
                entry.last_webhook_event_id or "",
            ):
                logger.info(
                    f"Stale webhook event skipped: {event.event_id} ({event.type} at "
                    f"{event.timestamp.isoformat()}) for user {event.user_id}"
                )
                return False

            updated = self.ledger.replace_if_version(self._snapshot(entry, event), entry.version)
            if updated:
                logger.info(
                    f"Webhook event {event.event_id} ({event.type}) applied for user {event.user_id}: "
                    f"plan={updated.plan.value} status={updated.status.value} limit={updated.credit_limit}"
                )
                self._mark_applied(event)
                return True

        raise LedgerContentionError(f"Ledger entry for {event.user_id} is too contended")

    def _snapshot(self, entry: LedgerEntry, event: WebhookEvent) -> LedgerEntry:
        marker = {
            "last_webhook_event_id": event.event_id,
            "last_webhook_event_at": event.timestamp,
        }
        event_type = (event.type or "").upper()

        if event_type in ACTIVATING_EVENTS:
            plan, status = event.plan, SubscriptionStatus.ACTIVE
        elif event_type in DOWNGRADE_EVENTS:
            plan, status = Plan.FREE, SubscriptionStatus.EXPIRED
        elif event_type in STATUS_EVENTS:
            plan, status = event.plan, STATUS_EVENTS[event_type]
        else:
            raise ValueError(f"{event.type} carries no entitlement")

        period_start = event.period_start or event.timestamp
        period_end = event.period_end or (period_start + self.ledger.period)
        if period_end <= period_start:
            period_end = period_start + self.ledger.period

        if period_start != entry.period_start:
            logger.info(
                f"Credit period changed for user {entry.user_id}: {entry.plan.value} -> {plan.value}, "
                f"period starting {period_start.isoformat()}"
            )

        # Usage follows the period only, so a plan change within a period keeps it.
        moved = self.ledger.moved_to_period(entry, period_start, period_end)
        return moved.model_copy(
            update={
                **marker,
                "plan": plan,
                "status": status,
                "credit_limit": self.ledger.plan_limit(plan),
                "store": None if plan == Plan.FREE else event.store,
            }
        )

    def _record_event(self, event: WebhookEvent) -> None:
        try:
            self._events.update_one(
                {"_id": event.event_id},
                {
                    "$setOnInsert": {
                        **event.model_dump(mode="python"),
                        "plan": event.plan.value,
                        "received_at": _now(),
                        "applied": False,
                    }
                },
                upsert=True,
            )
        except Exception as e:
            logger.warning(f"Failed to record billing event {event.event_id}: {e}")

    def _mark_applied(self, event: WebhookEvent) -> None:
        try:
            self._events.update_one({"_id": event.event_id}, {"$set": {"applied": True}})
        except Exception as e:
            logger.warning(f"Failed to mark billing event {event.event_id} applied: {e}")
