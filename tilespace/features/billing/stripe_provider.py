"""
Stripe billing provider.

Implements BillingProvider with the Stripe API and maps Stripe objects onto
the provider-neutral records in provider.py.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from tilespace.core.config import settings
from tilespace.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    Charge,
    CheckoutLink,
    CheckoutSession,
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, key, default)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def _metadata(obj: Any) -> Dict[str, Any]:
    meta = _get(obj, "metadata") or {}
    return {key: meta[key] for key in meta.keys()} if hasattr(meta, "keys") else {}


def parse_checkout_session(data: Any) -> CheckoutSession:
    metadata = _metadata(data)
    line_items = _get(_get(data, "line_items"), "data") or []
    price_id = _id_of(_get(line_items[0], "price")) if line_items else None
    customer_details = _get(data, "customer_details")
    return CheckoutSession(
        session_id=_get(data, "id"),
        payment_status=_get(data, "payment_status"),
        status=_get(data, "status"),
        client_reference_id=_get(data, "client_reference_id"),
        customer_id=_id_of(_get(data, "customer")),
        customer_email=_get(customer_details, "email") or _get(data, "customer_email"),
        subscription_id=_id_of(_get(data, "subscription")),
        price_id=price_id or metadata.get("priceId"),
        amount_total=_get(data, "amount_total"),
        currency=_get(data, "currency"),
        metadata=metadata,
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def retrieve_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["line_items"])
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise BillingProviderError(f"Stripe session lookup failed: {e}") from e
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe session lookup failed: {e}") from e
        if not session:
            return None
        return parse_checkout_session(session)

    def create_checkout_session(
        self,
        price_id: str,
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutLink:
        try:
            session = stripe.checkout.Session.create(
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                client_reference_id=client_reference_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e
        return CheckoutLink(session_id=session.id, url=session.url)

    def list_charges(self, customer_id: str, limit: int = 100) -> List[Charge]:
        try:
            charges = stripe.Charge.list(customer=customer_id, limit=limit, expand=["data.invoice"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe charge listing failed: {e}") from e

        result = []
        for charge in _get(charges, "data") or []:
            created = _get(charge, "created")
            result.append(Charge(
                charge_id=_get(charge, "id"),
                customer_id=_id_of(_get(charge, "customer")),
                subscription_id=_id_of(_get(_get(charge, "invoice"), "subscription")),
                amount=int(_get(charge, "amount") or 0),
                currency=_get(charge, "currency") or "usd",
                status=_get(charge, "status") or "unknown",
                created_at=datetime.fromtimestamp(created, timezone.utc) if created else None,
            ))
        return result

    def find_customer_by_email(self, email: str) -> Optional[str]:
        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer search failed: {e}") from e
        data = _get(customers, "data") or []
        return _get(data[0], "id") if data else None

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        return parse_event(event)


def parse_event(event: Any) -> BillingWebhookResult:
    """Map a Stripe event onto BillingWebhookResult."""
    event_type = _get(event, "type")
    data = _get(_get(event, "data"), "object") or {}
    result = BillingWebhookResult(
        event_id=_get(event, "id"),
        event_type=event_type,
        customer_id=_id_of(_get(data, "customer")),
        metadata=_metadata(data),
    )

    if event_type == "checkout.session.completed":
        result.session = parse_checkout_session(data)
        result.subscription_id = result.session.subscription_id
        result.price_id = result.session.price_id
    elif event_type.startswith("customer.subscription."):
        result.subscription_id = _get(data, "id")
        result.status = _get(data, "status")
        items = _get(_get(data, "items"), "data") or []
        if items:
            result.price_id = _id_of(_get(items[0], "price"))
    elif event_type.startswith("invoice."):
        result.subscription_id = _id_of(_get(data, "subscription"))
        result.status = _get(data, "status")

    return result
