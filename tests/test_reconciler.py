import itertools
from datetime import datetime, timedelta

import mongomock
import pytest

from app.billing.ledger import CreditLedger
from app.billing.models import Plan, SubscriptionStatus, WebhookEvent
from app.billing.reconciler import EntitlementReconciler
from app.core.exceptions import BadRequestException

T1 = datetime(2026, 3, 1, 12, 0, 0)
T2 = T1 + timedelta(hours=1)


def _event(event_id, type, at, plan=Plan.PRO, user_id="u1", **extra):
    return WebhookEvent(event_id=event_id, user_id=user_id, type=type, plan=plan, timestamp=at, **extra)


@pytest.fixture
def ledger(db, settings):
    return CreditLedger(db, settings)


@pytest.fixture
def reconciler(db, ledger):
    return EntitlementReconciler(db, ledger)


def test_purchase_upgrades_plan_and_resets_usage(reconciler, ledger):
    ledger.debit("u1", 3)
    assert reconciler.apply(_event("e1", "INITIAL_PURCHASE", T1, store="APP_STORE")) is True

    entry = ledger.load_or_create("u1")
    assert entry.plan == Plan.PRO
    assert entry.status == SubscriptionStatus.ACTIVE
    assert entry.credit_limit == 50
    assert entry.credits_used == 0
    assert entry.store == "APP_STORE"
    assert entry.last_webhook_event_id == "e1"


def test_duplicate_event_is_a_noop(reconciler, ledger, db):
    assert reconciler.apply(_event("e1", "INITIAL_PURCHASE", T1)) is True
    version = ledger.load_or_create("u1").version
    assert reconciler.apply(_event("e1", "INITIAL_PURCHASE", T1)) is False
    assert ledger.load_or_create("u1").version == version
    assert db.billing_events.count_documents({}) == 1


def test_renewal_delivered_before_older_cancellation_wins(reconciler, ledger):
    assert reconciler.apply(_event("renew", "RENEWAL", T2)) is True
    assert reconciler.apply(_event("cancel", "CANCELLATION", T1)) is False

    entry = ledger.load_or_create("u1")
    assert entry.plan == Plan.PRO
    assert entry.status == SubscriptionStatus.ACTIVE


def test_cancellation_downgrades_to_free(reconciler, ledger):
    reconciler.apply(_event("buy", "INITIAL_PURCHASE", T1, store="PLAY_STORE"))
    reconciler.apply(_event("expire", "EXPIRATION", T2))

    entry = ledger.load_or_create("u1")
    assert entry.plan == Plan.FREE
    assert entry.status == SubscriptionStatus.EXPIRED
    assert entry.credit_limit == 5
    assert entry.store is None


def test_billing_issue_keeps_plan(reconciler, ledger):
    reconciler.apply(_event("buy", "INITIAL_PURCHASE", T1))
    reconciler.apply(_event("issue", "BILLING_ISSUE", T2))
    entry = ledger.load_or_create("u1")
    assert entry.plan == Plan.PRO
    assert entry.status == SubscriptionStatus.BILLING_ISSUE


def test_renewal_in_same_period_keeps_usage(reconciler, ledger):
    start = T1 - timedelta(days=1)
    reconciler.apply(_event("buy", "INITIAL_PURCHASE", T1, period_start=start))
    ledger.debit("u1", 4, now=T1)
    reconciler.apply(_event("uncancel", "UNCANCELLATION", T2, period_start=start))
    assert ledger.load_or_create("u1").credits_used == 4


def test_events_without_entitlement_do_not_advance_marker(reconciler, ledger):
    assert reconciler.apply(_event("buy", "INITIAL_PURCHASE", T1)) is True
    assert reconciler.apply(_event("test", "TEST", T2 + timedelta(hours=5))) is False
    # A real event older than the TEST ping is still applied.
    assert reconciler.apply(_event("issue", "BILLING_ISSUE", T2)) is True
    assert ledger.load_or_create("u1").status == SubscriptionStatus.BILLING_ISSUE


def test_any_delivery_order_converges(settings):
    events = [
        _event("a", "INITIAL_PURCHASE", T1, plan=Plan.STARTER),
        _event("b", "PRODUCT_CHANGE", T1 + timedelta(minutes=10), plan=Plan.PRO),
        _event("c", "CANCELLATION", T1 + timedelta(minutes=20)),
        _event("d", "RENEWAL", T1 + timedelta(minutes=30), plan=Plan.PRO_MAX),
    ]

    finals = set()
    for order in itertools.permutations(events):
        db = mongomock.MongoClient()["mediajobs_test"]
        ledger = CreditLedger(db, settings)
        reconciler = EntitlementReconciler(db, ledger)
        for event in order:
            reconciler.apply(event)
        entry = ledger.load_or_create("u1")
        finals.add(
            (entry.plan, entry.status, entry.credit_limit, entry.credits_used,
             entry.period_start, entry.period_end, entry.last_webhook_event_id)
        )

    assert len(finals) == 1
    plan, status, limit, *_ = finals.pop()
    assert (plan, status, limit) == (Plan.PRO_MAX, SubscriptionStatus.ACTIVE, 500)


def test_from_revenuecat_payload():
    payload = {
        "api_version": "1.0",
        "event": {
            "id": "evt-1",
            "type": "RENEWAL",
            "app_user_id": "u1",
            "event_timestamp_ms": 1767225600000,
            "purchased_at_ms": 1767225000000,
            "expiration_at_ms": 1769817000000,
            "product_id": "pro_monthly",
            "entitlement_ids": ["pro_max"],
            "store": "APP_STORE",
        },
    }
    event = WebhookEvent.from_revenuecat(payload)
    assert event.event_id == "evt-1"
    assert event.plan == Plan.PRO_MAX
    assert event.store == "APP_STORE"
    assert event.timestamp == datetime(2026, 1, 1)
    assert event.period_start < event.period_end


def test_from_revenuecat_product_fallback_and_unknown_store():
    event = WebhookEvent.from_revenuecat(
        {"event": {"id": "e", "type": "INITIAL_PURCHASE", "app_user_id": "u1",
                   "event_timestamp_ms": 1767225600000, "product_id": "starter_monthly", "store": "??"}}
    )
    assert event.plan == Plan.STARTER
    assert event.store is None


@pytest.mark.parametrize(
    "payload",
    [{}, {"event": "nope"}, {"event": {"id": "e", "type": "RENEWAL"}}, {"event": {"id": "e", "type": "RENEWAL", "app_user_id": "u"}}],
)
def test_from_revenuecat_rejects_malformed(payload):
    with pytest.raises(BadRequestException):
        WebhookEvent.from_revenuecat(payload)


def _replay(settings, events, used=10, start=T1 - timedelta(days=1)):
    db = mongomock.MongoClient()["mediajobs_test"]
    ledger = CreditLedger(db, settings)
    reconciler = EntitlementReconciler(db, ledger)
    reconciler.apply(_event("buy", "INITIAL_PURCHASE", T1 - timedelta(hours=1), period_start=start))
    ledger.debit("u1", used, now=T1)
    for event in events:
        reconciler.apply(event)
    return ledger.load_or_create("u1")


def test_cancel_then_uncancel_in_same_period_keeps_usage_in_any_order(settings):
    start = T1 - timedelta(days=1)
    cancel = _event("cancel", "CANCELLATION", T1, period_start=start)
    uncancel = _event("uncancel", "UNCANCELLATION", T2, period_start=start)

    in_order = _replay(settings, [cancel, uncancel])
    reversed_order = _replay(settings, [uncancel, cancel])

    assert in_order.plan == reversed_order.plan == Plan.PRO
    assert in_order.credits_used == reversed_order.credits_used == 10


def test_returning_to_a_period_restores_its_usage(settings):
    start = T1 - timedelta(days=1)
    events = [
        _event("expire", "EXPIRATION", T1),
        _event("renew", "RENEWAL", T2, period_start=start),
    ]
    entry = _replay(settings, events)
    assert entry.period_start == start
    assert entry.credits_used == 10
    assert entry.plan == Plan.PRO


def test_product_change_within_period_keeps_usage(settings):
    start = T1 - timedelta(days=1)
    entry = _replay(settings, [_event("change", "PRODUCT_CHANGE", T1, plan=Plan.PRO_MAX, period_start=start)])
    assert entry.plan == Plan.PRO_MAX
    assert entry.credit_limit == 500
    assert entry.credits_used == 10


def test_delivery_order_converges_with_credits_in_use(settings):
    start = T1 - timedelta(days=1)
    events = [
        _event("a", "CANCELLATION", T1, period_start=start),
        _event("b", "EXPIRATION", T1 + timedelta(minutes=10)),
        _event("c", "BILLING_ISSUE", T1 + timedelta(minutes=20), plan=Plan.STARTER, period_start=start),
        _event("d", "UNCANCELLATION", T1 + timedelta(minutes=30), period_start=start),
    ]

    finals = set()
    for order in itertools.permutations(events):
        entry = _replay(settings, order)
        finals.add(
            (entry.plan, entry.status, entry.credit_limit, entry.credits_used,
             entry.period_start, entry.period_end, entry.store, entry.last_webhook_event_id)
        )

    assert len(finals) == 1
    plan, status, limit, used, *_ = finals.pop()
    assert (plan, status, limit, used) == (Plan.PRO, SubscriptionStatus.ACTIVE, 50, 10)
