import hashlib
import hmac
import json
import time
from unittest.mock import Mock, patch

import pytest

import tilespace.features.billing.service as billing_service
from tilespace.core.config import settings
from tilespace.features.accounts.service import get_account
from tilespace.features.billing.provider import BillingProviderError, CheckoutLink, CheckoutSession
from tilespace.features.billing.service import upsert_member_account
from tilespace.features.billing.stripe_provider import parse_checkout_session, parse_event

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def fake_provider(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID", "price_member")
    fake = Mock()
    fake.retrieve_checkout_session.return_value = CheckoutSession(
        session_id="cs_1",
        payment_status="paid",
        status="complete",
        client_reference_id="guest_abc",
        customer_id="cus_1",
        price_id="price_member",
    )
    monkeypatch.setattr(billing_service, "get_provider", lambda: fake)
    return fake


@pytest.fixture
def stripe_configured(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def test_create_account_from_body(client, fake_provider):
    resp = client.post("/api/create-account", json={"sessionId": "cs_1"})

    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    body = resp.json()
    assert body["success"] is True
    assert body["plan"] == "member"
    assert body["redirect"] == "/admin"
    assert body["limits"]["contactsCount"] == 1000
    assert get_account("guest_abc").is_member is True


def test_create_account_from_query(client, fake_provider):
    resp = client.post("/api/create-account?session_id=cs_1")

    assert resp.status_code == 200
    fake_provider.retrieve_checkout_session.assert_called_once_with("cs_1")


def test_create_account_for_signed_in_member(client, fake_provider, member_headers):
    resp = client.post("/api/create-account", json={"sessionId": "cs_1"}, headers=member_headers)

    assert resp.status_code == 200
    assert get_account("user_member_1").migration_needed is True


def test_create_account_error_statuses(client, fake_provider):
    assert client.post("/api/create-account", json={}).status_code == 400

    fake_provider.retrieve_checkout_session.return_value = None
    assert client.post("/api/create-account", json={"sessionId": "cs_x"}).status_code == 404

    fake_provider.retrieve_checkout_session.return_value = CheckoutSession(session_id="cs_1", payment_status="unpaid")
    resp = client.post("/api/create-account", json={"sessionId": "cs_1"})
    assert resp.status_code == 402
    assert resp.json()["error"]["code"] == "payment_not_completed"


def test_create_account_hides_provider_errors(client, fake_provider):
    fake_provider.retrieve_checkout_session.side_effect = BillingProviderError("No such api key sk_live_...")

    resp = client.post("/api/create-account", json={"sessionId": "cs_1"})

    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "Unexpected error"


def test_checkout_endpoint(client, fake_provider, member_headers):
    fake_provider.create_checkout_session.return_value = CheckoutLink(session_id="cs_new", url="https://pay/cs_new")

    resp = client.post("/api/stripe/checkout", headers=member_headers)

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://pay/cs_new", "sessionId": "cs_new"}
    assert fake_provider.create_checkout_session.call_args.kwargs["client_reference_id"] == "user_member_1"


def test_checkout_without_billing_is_500(client):
    resp = client.post("/api/stripe/checkout")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "billing_provider_error"


def test_payments_requires_member(client):
    assert client.get("/api/user/payments").status_code == 401


def test_payments_lists_purchases(client, fake_provider, member_headers):
    upsert_member_account("user_member_1", plan="member", stripe_customer_id="cus_1")
    fake_provider.list_charges.return_value = []

    resp = client.get("/api/user/payments", headers=member_headers)

    assert resp.status_code == 200
    assert resp.json() == {"purchases": []}


def test_webhook_missing_signature(client, stripe_configured):
    resp = client.post("/api/webhooks/stripe", content=b"{}")

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_bad_signature(client, stripe_configured):
    resp = client.post(
        "/api/webhooks/stripe",
        content=b'{"id": "evt_1"}',
        headers={"stripe-signature": sign(b'{"id": "evt_1"}', secret="whsec_wrong")},
    )

    assert resp.status_code == 400


def test_signed_subscription_deleted_webhook(client, stripe_configured):
    upsert_member_account("user_w", plan="member", stripe_customer_id="cus_w")
    payload = json.dumps({
        "id": "evt_signed_1",
        "object": "event",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_w", "object": "subscription", "customer": "cus_w", "status": "canceled"}},
    }).encode()

    resp = client.post("/api/webhooks/stripe", content=payload, headers={"stripe-signature": sign(payload)})

    assert resp.status_code == 200
    assert resp.json()["received"] is True
    assert get_account("user_w").is_member is False


def test_parse_checkout_session_from_stripe_shape():
    session = parse_checkout_session({
        "id": "cs_9",
        "payment_status": "paid",
        "status": "complete",
        "client_reference_id": None,
        "customer": {"id": "cus_9", "object": "customer"},
        "subscription": "sub_9",
        "customer_details": {"email": "nine@example.com"},
        "line_items": {"data": [{"price": {"id": "price_9"}}]},
        "metadata": {"userId": "user_9"},
        "amount_total": 1900,
        "currency": "usd",
    })

    assert session.is_paid
    assert session.customer_id == "cus_9"
    assert session.subscription_id == "sub_9"
    assert session.customer_email == "nine@example.com"
    assert session.price_id == "price_9"
    assert session.metadata == {"userId": "user_9"}


def test_parse_subscription_event_price():
    result = parse_event({
        "id": "evt_2",
        "type": "customer.subscription.updated",
        "data": {"object": {
            "id": "sub_2",
            "customer": "cus_2",
            "status": "active",
            "items": {"data": [{"price": {"id": "price_member"}}]},
        }},
    })

    assert result.subscription_id == "sub_2"
    assert result.customer_id == "cus_2"
    assert result.status == "active"
    assert result.price_id == "price_member"


def test_stripe_provider_maps_missing_session_to_none(stripe_configured):
    import stripe

    from tilespace.features.billing.stripe_provider import StripeProvider

    missing = stripe.InvalidRequestError("No such checkout.session", "id", code="resource_missing")
    with patch("stripe.checkout.Session.retrieve", side_effect=missing):
        assert StripeProvider().retrieve_checkout_session("cs_gone") is None
