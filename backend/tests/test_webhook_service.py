import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from quicktools.core.clock import utcnow
from quicktools.core.exceptions import WebhookSignatureError
from quicktools.models import StripeCustomer, StripeSubscription, StripeWebhookEvent, User
from quicktools.services import stripe_service, webhook_service
from quicktools.services.pending_checkout_service import create_pending_checkout
from conftest import (
    WEBHOOK_SECRET,
    make_customer,
    make_event,
    make_subscription,
    make_user,
    sign_payload,
    subscription_object,
)


def _post(client, payload, signature=None):
    headers = {"stripe-signature": signature if signature is not None else sign_payload(payload)}
    return client.post("/api/webhooks/stripe", content=payload, headers=headers)


def _ledger_count(db):
    return db.query(StripeWebhookEvent).count()


# =========================================================
# 署名検証
# =========================================================

def test_invalid_signature_is_rejected_without_writes(client, db_session):
    payload = make_event("evt_bad", "customer.subscription.updated", subscription_object())
    res = _post(client, payload, signature=sign_payload(payload, secret="whsec_wrong"))

    assert res.status_code == 400
    assert _ledger_count(db_session) == 0


def test_missing_signature_is_rejected(client, db_session):
    payload = make_event("evt_nosig", "invoice.paid", {})
    res = client.post("/api/webhooks/stripe", content=payload)

    assert res.status_code == 400
    assert _ledger_count(db_session) == 0


def test_stale_signature_timestamp_is_rejected(db_session):
    payload = make_event("evt_old", "invoice.paid", {})
    header = sign_payload(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(WebhookSignatureError):
        webhook_service.process_webhook(db_session, payload, header, WEBHOOK_SECRET, "test")


def test_non_json_payload_with_valid_signature_is_rejected(db_session):
    payload = b"not-json"
    with pytest.raises(WebhookSignatureError):
        webhook_service.process_webhook(db_session, payload, sign_payload(payload), WEBHOOK_SECRET, "test")


# =========================================================
# 台帳による冪等性
# =========================================================

def test_duplicate_event_short_circuits(client, db_session):
    """同じイベントIDの再送ではUserに触れない"""
    user = make_user(db_session)
    make_customer(db_session, user)
    payload = make_event("evt_dup", "customer.subscription.updated", subscription_object(status="active"))

    first = _post(client, payload)
    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert db_session.get(User, user.id).is_pro is True

    # 手動で変更しておき、再送で上書きされないことを確認
    db_session.query(User).filter(User.id == user.id).update({User.is_pro: False})
    db_session.commit()

    second = _post(client, payload)
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert db_session.get(User, user.id).is_pro is False
    assert _ledger_count(db_session) == 1


def test_replay_many_times_gives_same_state(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    payload = make_event("evt_many", "customer.subscription.updated", subscription_object(status="trialing"))

    results = [
        webhook_service.process_webhook(db_session, payload, sign_payload(payload), WEBHOOK_SECRET, "test").status
        for _ in range(3)
    ]

    assert results == ["processed", "duplicate", "duplicate"]
    assert db_session.query(StripeSubscription).count() == 1
    sub = db_session.query(StripeSubscription).one()
    assert sub.status == "trialing"


def test_same_event_id_in_other_mode_is_a_separate_ledger_entry(db_session):
    webhook_service.process_event(db_session, {"id": "evt_x", "type": "ping", "livemode": False}, "test")
    result = webhook_service.process_event(db_session, {"id": "evt_x", "type": "ping", "livemode": True}, "test")

    assert result.status == "processed"
    modes = sorted(e.mode for e in db_session.query(StripeWebhookEvent).all())
    assert modes == ["live", "test"]


def test_failure_rolls_back_ledger_so_event_is_retryable(client, db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    payload = make_event("evt_retry", "customer.subscription.updated", subscription_object())

    with patch.object(webhook_service, "_handle_subscription_changed", side_effect=RuntimeError("db down")):
        res = _post(client, payload)
    assert res.status_code == 500
    assert _ledger_count(db_session) == 0

    res = _post(client, payload)
    assert res.status_code == 200
    assert res.json()["status"] == "processed"
    assert db_session.get(User, user.id).is_pro is True


def test_unhandled_event_type_is_still_recorded(client, db_session):
    payload = make_event("evt_other", "customer.created", {"id": "cus_new"})
    res = _post(client, payload)

    assert res.status_code == 200
    event = db_session.query(StripeWebhookEvent).one()
    assert event.event_type == "customer.created"
    assert event.mode == "test"


# =========================================================
# customer.subscription.*
# =========================================================

def test_past_due_within_period_keeps_pro(client, db_session):
    """決済失敗でも期間内はPro維持"""
    user = make_user(db_session)
    make_customer(db_session, user)
    tomorrow = int(time.time()) + 86400
    payload = make_event(
        "evt_past_due",
        "customer.subscription.updated",
        subscription_object(status="past_due", period_end=tomorrow),
    )

    assert _post(client, payload).status_code == 200

    user = db_session.get(User, user.id)
    assert user.is_pro is True
    assert user.plan == "pro"
    assert user.pro_valid_until is not None


def test_subscription_deleted_downgrades_user(client, db_session):
    user = make_user(db_session, plan="pro", is_pro=True)
    make_customer(db_session, user)
    make_subscription(db_session, user, status="active")
    now = int(time.time())
    payload = make_event(
        "evt_deleted",
        "customer.subscription.deleted",
        subscription_object(status="canceled", period_end=now - 10, ended_at=now - 10, canceled_at=now - 10),
    )

    assert _post(client, payload).status_code == 200

    user = db_session.get(User, user.id)
    assert user.is_pro is False
    assert user.plan == "free"
    assert user.pro_valid_until is None
    sub = db_session.query(StripeSubscription).one()
    assert sub.status == "canceled"
    assert sub.ended_at is not None


def test_subscription_upsert_records_price_and_flags(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    obj = subscription_object(status="active", cancel_at_period_end=True, sub_id="sub_new")
    webhook_service.process_event(
        db_session, {"id": "evt_up", "type": "customer.subscription.created", "livemode": False, "data": {"object": obj}}, "test"
    )

    sub = db_session.query(StripeSubscription).one()
    assert sub.stripe_subscription_id == "sub_new"
    assert sub.stripe_price_id == "price_test_pro"
    assert sub.stripe_product_id == "prod_pro"
    assert sub.cancel_at_period_end is True
    assert sub.mode == "test"


def test_latest_subscription_wins_per_user(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    make_subscription(db_session, user, status="canceled", stripe_subscription_id="sub_old")

    obj = subscription_object(status="active", sub_id="sub_fresh")
    webhook_service.process_event(
        db_session, {"id": "evt_fresh", "type": "customer.subscription.updated", "data": {"object": obj}}, "test"
    )

    assert db_session.query(StripeSubscription).count() == 1
    assert db_session.query(StripeSubscription).one().stripe_subscription_id == "sub_fresh"


def test_resubscribe_after_ended_subscription_is_pro(db_session):
    """終了済みサブスクリプションの日時が新しいサブスクリプションに残らない"""
    user = make_user(db_session)
    make_customer(db_session, user)
    ended = utcnow() - timedelta(days=40)
    make_subscription(
        db_session, user, status="canceled", stripe_subscription_id="sub_old",
        period_end=ended, ended_at=ended, canceled_at=ended,
    )

    obj = subscription_object(status="active", sub_id="sub_new")
    webhook_service.process_event(
        db_session, {"id": "evt_resub", "type": "customer.subscription.created", "data": {"object": obj}}, "test"
    )

    sub = db_session.query(StripeSubscription).one()
    assert sub.stripe_subscription_id == "sub_new"
    assert sub.ended_at is None
    assert sub.canceled_at is None
    user = db_session.get(User, user.id)
    assert user.is_pro is True
    assert user.plan == "pro"


def test_missing_period_on_other_subscription_is_not_inherited(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    make_subscription(db_session, user, status="active", stripe_subscription_id="sub_old")

    obj = subscription_object(status="incomplete", sub_id="sub_next")
    del obj["current_period_end"]
    webhook_service.process_event(
        db_session, {"id": "evt_next", "type": "customer.subscription.created", "data": {"object": obj}}, "test"
    )

    assert db_session.query(StripeSubscription).one().current_period_end is None


def test_missing_period_on_same_subscription_keeps_stored_value(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    make_subscription(db_session, user, status="active")

    obj = subscription_object(status="active")
    del obj["current_period_end"]
    webhook_service.process_event(
        db_session, {"id": "evt_same", "type": "customer.subscription.updated", "data": {"object": obj}}, "test"
    )

    assert db_session.query(StripeSubscription).one().current_period_end is not None


def test_period_bounds_read_from_items_when_missing_on_subscription(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    end = int(time.time()) + 5 * 86400
    obj = subscription_object(status="active")
    del obj["current_period_end"]
    obj["items"]["data"][0]["current_period_end"] = end
    webhook_service.process_event(
        db_session, {"id": "evt_items", "type": "customer.subscription.updated", "data": {"object": obj}}, "test"
    )

    assert db_session.query(StripeSubscription).one().current_period_end is not None


def test_subscription_for_unknown_customer_is_noop(client, db_session):
    payload = make_event("evt_unknown", "customer.subscription.updated", subscription_object(customer="cus_nobody"))

    assert _post(client, payload).status_code == 200
    assert db_session.query(StripeSubscription).count() == 0
    assert _ledger_count(db_session) == 1


# =========================================================
# test/live の分離
# =========================================================

def test_event_for_other_mode_customer_is_skipped(client, db_session):
    user = make_user(db_session)
    make_customer(db_session, user, mode="live")
    payload = make_event("evt_cross", "customer.subscription.updated", subscription_object(status="active"))

    res = _post(client, payload)

    assert res.status_code == 200
    assert db_session.query(StripeSubscription).count() == 0
    assert db_session.get(User, user.id).is_pro is False


def test_live_event_on_test_endpoint_does_not_mutate(client, db_session):
    user = make_user(db_session)
    make_customer(db_session, user, mode="test")
    payload = make_event(
        "evt_live", "customer.subscription.updated", subscription_object(status="active"), livemode=True
    )

    res = _post(client, payload)

    assert res.status_code == 200
    assert db_session.query(StripeSubscription).count() == 0
    assert db_session.query(StripeWebhookEvent).one().mode == "live"


# =========================================================
# checkout.session.completed
# =========================================================

def test_checkout_completed_links_customer_and_marks_pro(client, db_session):
    user = make_user(db_session)
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_new",
        "client_reference_id": str(user.id),
        "metadata": {"userId": str(user.id), "plan": "pro", "stripeMode": "test"},
    }

    assert _post(client, make_event("evt_cs", "checkout.session.completed", session)).status_code == 200

    customer = db_session.query(StripeCustomer).one()
    assert customer.user_id == user.id
    assert customer.stripe_customer_id == "cus_new"
    assert customer.mode == "test"
    user = db_session.get(User, user.id)
    assert user.is_pro is True
    assert user.plan == "pro"


def test_checkout_completed_does_not_merge_across_modes(client, db_session):
    user = make_user(db_session)
    make_customer(db_session, user, stripe_customer_id="cus_live", mode="live")
    session = {"customer": "cus_test", "metadata": {"userId": str(user.id)}}

    assert _post(client, make_event("evt_cs_cross", "checkout.session.completed", session)).status_code == 200

    customer = db_session.query(StripeCustomer).one()
    assert customer.stripe_customer_id == "cus_live"
    assert db_session.get(User, user.id).is_pro is False


def test_checkout_completed_for_unconsumed_guest_checkout_is_noop(client, db_session):
    pending, _ = create_pending_checkout(db_session, "guest@example.com", "test")
    session = {
        "customer": "cus_guest",
        "client_reference_id": pending.id,
        "metadata": {"pendingCheckoutId": pending.id, "stripeMode": "test"},
    }

    assert _post(client, make_event("evt_cs_guest", "checkout.session.completed", session)).status_code == 200

    assert db_session.query(User).count() == 0
    assert db_session.query(StripeCustomer).count() == 0


def test_checkout_completed_for_consumed_guest_checkout_links_customer(db_session):
    pending, _ = create_pending_checkout(db_session, "guest@example.com", "test")
    pending.used_at = utcnow() - timedelta(seconds=5)
    user = make_user(db_session, email="guest@example.com", plan="pro", is_pro=True)
    session = {
        "customer": "cus_guest",
        "client_reference_id": pending.id,
        "metadata": {"pendingCheckoutId": pending.id},
    }

    webhook_service.process_event(
        db_session, {"id": "evt_cs_g2", "type": "checkout.session.completed", "data": {"object": session}}, "test"
    )

    customer = db_session.query(StripeCustomer).one()
    assert customer.user_id == user.id
    assert customer.stripe_customer_id == "cus_guest"


# =========================================================
# invoice.*
# =========================================================

@pytest.mark.parametrize("event_type,status", [
    ("invoice.payment_failed", "open"),
    ("invoice.payment_succeeded", "paid"),
])
def test_invoice_events_record_latest_invoice_only(client, db_session, event_type, status):
    user = make_user(db_session, plan="pro", is_pro=True)
    make_customer(db_session, user)
    make_subscription(db_session, user, status="active")
    invoice = {"id": "in_1", "object": "invoice", "customer": "cus_123", "subscription": "sub_123", "status": status}

    assert _post(client, make_event(f"evt_{status}", event_type, invoice)).status_code == 200

    sub = db_session.query(StripeSubscription).one()
    assert sub.latest_invoice_id == "in_1"
    assert sub.latest_invoice_status == status
    assert sub.status == "active"
    assert db_session.get(User, user.id).is_pro is True


def test_invoice_for_other_subscription_is_ignored(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    make_subscription(db_session, user)
    invoice = {"id": "in_2", "customer": "cus_123", "subscription": "sub_other", "status": "paid"}

    webhook_service.process_event(
        db_session, {"id": "evt_in2", "type": "invoice.payment_succeeded", "data": {"object": invoice}}, "test"
    )

    assert db_session.query(StripeSubscription).one().latest_invoice_id is None


def test_invoice_subscription_from_parent_details(db_session):
    user = make_user(db_session)
    make_customer(db_session, user)
    make_subscription(db_session, user)
    invoice = {
        "id": "in_3",
        "customer": "cus_123",
        "status": "paid",
        "parent": {"subscription_details": {"subscription": "sub_123"}},
    }

    webhook_service.process_event(
        db_session, {"id": "evt_in3", "type": "invoice.paid", "data": {"object": invoice}}, "test"
    )

    assert db_session.query(StripeSubscription).one().latest_invoice_id == "in_3"


def test_construct_webhook_event_returns_plain_mapping():
    payload = make_event("evt_dict", "customer.subscription.updated", subscription_object(status="active"))

    event = stripe_service.construct_webhook_event(payload, sign_payload(payload), WEBHOOK_SECRET)

    assert isinstance(event, dict)
    assert event["id"] == "evt_dict"
    assert event["livemode"] is False
    obj = event["data"]["object"]
    assert obj["customer"] == "cus_123"
    assert obj["items"]["data"][0]["price"]["id"] == "price_test_pro"
