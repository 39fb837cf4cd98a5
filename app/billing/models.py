"""Billing models: plans, ledger entries and normalized webhook events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestException


class Plan(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    PRO_MAX = "pro_max"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    BILLING_ISSUE = "billing_issue"
    PAUSED = "paused"
    CANCELLED = "cancelled"


PLAN_PRIORITY = {Plan.FREE: 0, Plan.STARTER: 1, Plan.PRO: 2, Plan.PRO_MAX: 3}

# RevenueCat entitlement ids (and dashboard display names) -> plan.
ENTITLEMENT_TO_PLAN: Dict[str, Plan] = {
    "pro_max": Plan.PRO_MAX,
    "pro": Plan.PRO,
    "starter": Plan.STARTER,
    "Pro Max": Plan.PRO_MAX,
    "Pro": Plan.PRO,
    "Starter": Plan.STARTER,
}

# Fallback when entitlement ids don't match.
PRODUCT_TO_PLAN: Dict[str, Plan] = {
    "pro_max_monthly": Plan.PRO_MAX,
    "pro_monthly": Plan.PRO,
    "starter_monthly": Plan.STARTER,
}

KNOWN_STORES = {"APP_STORE", "PLAY_STORE", "STRIPE", "RC_BILLING"}


def resolve_plan(entitlement_ids: Optional[List[str]], product_id: Optional[str]) -> Plan:
    """Highest tier wins when multiple entitlements are present."""
    best = Plan.FREE
    for ent in entitlement_ids or []:
        plan = ENTITLEMENT_TO_PLAN.get(ent)
        if plan and PLAN_PRIORITY[plan] > PLAN_PRIORITY[best]:
            best = plan
    if best == Plan.FREE and product_id:
        best = PRODUCT_TO_PLAN.get(product_id, Plan.FREE)
    return best


class PeriodUsage(BaseModel):
    """Credits consumed in a period the entry has since moved away from."""

    period_start: datetime
    credits_used: int = 0


class LedgerEntry(BaseModel):
    """Per-user subscription and credit state (`credit_ledger` collection)."""

    user_id: str
    plan: Plan = Plan.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    credit_limit: int
    credits_used: int = 0
    period_start: datetime
    period_end: datetime
    store: Optional[str] = None
    last_webhook_event_id: Optional[str] = None
    last_webhook_event_at: Optional[datetime] = None
    recent_debits: List[str] = Field(default_factory=list)
    past_usage: List[PeriodUsage] = Field(default_factory=list)
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def credits_remaining(self) -> int:
        return max(0, self.credit_limit - self.credits_used)

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="python")
        doc["plan"] = self.plan.value
        doc["status"] = self.status.value
        doc["_id"] = self.user_id
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "LedgerEntry":
        data = dict(doc)
        data.pop("_id", None)
        return cls.model_validate(data)


class WebhookEvent(BaseModel):
    """A pre-authenticated billing event, normalized from the provider payload."""

    event_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    type: str
    plan: Plan = Plan.FREE
    timestamp: datetime
    store: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def order_key(self) -> tuple:
        return (self.timestamp, self.event_id)

    @classmethod
    def from_revenuecat(cls, payload: Dict[str, Any]) -> "WebhookEvent":
        event = (payload or {}).get("event")
        if not isinstance(event, dict):
            raise BadRequestException("Webhook payload has no event object.")
        try:
            event_id = str(event["id"])
            user_id = str(event["app_user_id"])
            event_type = str(event["type"])
            ts_ms = int(event.get("event_timestamp_ms") or event.get("purchased_at_ms") or 0)
        except (KeyError, TypeError, ValueError) as e:
            raise BadRequestException("Malformed webhook event.") from e
        if not ts_ms:
            raise BadRequestException("Webhook event has no timestamp.")

        product_id = event.get("new_product_id") or event.get("product_id")
        plan = resolve_plan(event.get("entitlement_ids"), product_id)

        purchased_ms = event.get("purchased_at_ms")
        expiration_ms = event.get("expiration_at_ms")
        store = event.get("store")

        return cls(
            event_id=event_id,
            user_id=user_id,
            type=event_type,
            plan=plan,
            timestamp=_from_ms(ts_ms),
            store=store if store in KNOWN_STORES else None,
            period_start=_from_ms(purchased_ms) if purchased_ms else None,
            period_end=_from_ms(expiration_ms) if expiration_ms else None,
        )


def _from_ms(value: Any) -> datetime:
    return datetime.utcfromtimestamp(int(value) / 1000.0)


class SubscriptionInfoResponse(BaseModel):
    plan: Plan
    status: SubscriptionStatus
    credits_used: int
    credits_limit: int
    credits_remaining: int
    current_period_end: Optional[datetime] = None
    will_renew: bool

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "SubscriptionInfoResponse":
        return cls(
            plan=entry.plan,
            status=entry.status,
            credits_used=entry.credits_used,
            credits_limit=entry.credit_limit,
            credits_remaining=entry.credits_remaining,
            current_period_end=entry.period_end,
            will_renew=entry.plan != Plan.FREE and entry.status == SubscriptionStatus.ACTIVE,
        )


class WebhookAckResponse(BaseModel):
    status: str = "ok"
    applied: bool
