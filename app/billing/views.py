"""Subscription and billing webhook endpoints."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from pymongo.database import Database

from app.billing.dependencies import require_webhook_secret
from app.billing.ledger import CreditLedger
from app.billing.models import SubscriptionInfoResponse, WebhookAckResponse, WebhookEvent
from app.billing.reconciler import EntitlementReconciler
from app.core.database import get_db
from app.core.dependencies import get_current_user


router = APIRouter(tags=["Billing"])


@router.get("/subscription", response_model=SubscriptionInfoResponse)
def get_subscription(
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    """Current plan and credit usage for the authenticated user."""
    return CreditLedger(db).subscription_info(current_user["id"])


@router.post("/webhooks/revenuecat", response_model=WebhookAckResponse, include_in_schema=False)
def handle_revenuecat_webhook(
    payload: Dict[str, Any] = Body(...),
    _: str = Depends(require_webhook_secret),
    db: Database = Depends(get_db),
):
    """
    Receive subscription events from RevenueCat.
    Duplicate and out-of-order events are acknowledged without effect.
    """
    event = WebhookEvent.from_revenuecat(payload)
    applied = EntitlementReconciler(db).apply(event)
    return WebhookAckResponse(applied=applied)
