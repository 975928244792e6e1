"""
Billing service orchestrator.

Coordinates:
- Checkout reconciliation (paid session -> member account)
- Subscription lifecycle from webhooks
- Purchase history and backfill

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tilespace.core.config import settings
from tilespace.core.database import get_db_session, accounts, purchases, billing_events
from tilespace.core.errors import NotFoundError, PaymentRequiredError, ValidationError
from tilespace.core.identity import GuestIdentity, Identity
from tilespace.core.logging import log_event
from tilespace.core.metrics import billing_reconciliations_total
from tilespace.features.accounts.service import get_account, get_account_by_email
from tilespace.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutLink,
    CheckoutSession,
)
from tilespace.features.billing.stripe_provider import StripeProvider
from tilespace.features.plans.service import DEFAULT_MEMBER_PLAN, GUEST_PLAN, is_known_plan, limits_for
from tilespace.models.purchase import Purchase


class MissingSession(ValidationError):
    code = "missing_session"


class SessionNotFound(NotFoundError):
    code = "session_not_found"


class PaymentNotCompleted(PaymentRequiredError):
    code = "payment_not_completed"


class MissingSubject(ValidationError):
    code = "missing_subject"


@dataclass
class ReconcileResult:
    member_id: str
    plan: str
    limits: Dict[str, int]


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    provider = provider or get_provider()
    if not provider:
        raise BillingProviderError("Billing not enabled")
    return provider


def resolve_plan(price_id: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> str:
    """Configured price -> member; metadata.plan naming a paid plan -> that plan."""
    if price_id and settings.STRIPE_PRICE_ID and price_id == settings.STRIPE_PRICE_ID:
        return DEFAULT_MEMBER_PLAN
    requested = (metadata or {}).get("plan")
    if requested and requested != GUEST_PLAN and is_known_plan(requested):
        return requested
    return DEFAULT_MEMBER_PLAN


def _write_member_account(user_id: str, values: Dict[str, Any], email: Optional[str]) -> None:
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        existing = session.execute(
            select(accounts.c.user_id, accounts.c.email).where(accounts.c.user_id == user_id)
        ).first()
        if existing:
            changes = dict(values, updated_at=now)
            if email and not existing.email:
                changes["email"] = email
            session.execute(update(accounts).where(accounts.c.user_id == user_id).values(**changes))
        else:
            session.execute(
                insert(accounts).values(user_id=user_id, email=email, created_at=now, updated_at=now, **values)
            )


def upsert_member_account(
    user_id: str,
    *,
    plan: str,
    email: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    subscription_status: Optional[str] = "active",
) -> str:
    """
    Mark user_id as a paying member and flag its guest data for migration.

    The email is the tie-breaker: when it already belongs to a different
    account, that account is upgraded instead. Returns the member id that
    was actually written.
    """
    values = {
        "plan": plan,
        "is_member": True,
        "subscription_status": subscription_status,
        "membership_started_at": datetime.now(timezone.utc),
        "migration_needed": True,
    }
    if stripe_customer_id:
        values["stripe_customer_id"] = stripe_customer_id
    if subscription_id:
        values["subscription_id"] = subscription_id

    try:
        _write_member_account(user_id, values, email)
        return user_id
    except IntegrityError:
        owner = get_account_by_email(email) if email else None
        if not owner or owner.user_id == user_id:
            raise
        log_event(
            "info",
            "billing.account_email_merge",
            user_id=owner.user_id,
            extra={"requested_user_id": user_id},
        )
        _write_member_account(owner.user_id, values, None)
        return owner.user_id


def purchase_exists(stripe_session_id: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(purchases.c.id).where(purchases.c.stripe_session_id == stripe_session_id)
        ).first()
        return row is not None


def record_purchase(purchase: Purchase) -> bool:
    """
    Insert a purchase unless its provider session id is already recorded.

    Best effort: returns True when a row was written, False when it was a
    duplicate or the write failed (failures are logged, never raised).
    """
    if purchase_exists(purchase.stripe_session_id):
        return False
    values = purchase.model_dump(exclude_none=True)
    try:
        with get_db_session() as session:
            session.execute(insert(purchases).values(**values))
        return True
    except IntegrityError:
        # Concurrent insert of the same session id
        return False
    except SQLAlchemyError as exc:
        log_event(
            "error",
            "billing.purchase_record_failed",
            user_id=purchase.user_id,
            error_code="purchase_record_failed",
            extra={"stripe_session_id": purchase.stripe_session_id, "error": str(exc)},
        )
        return False


def list_purchases(user_id: str) -> List[Purchase]:
    with get_db_session() as session:
        rows = session.execute(
            select(purchases)
            .where(purchases.c.user_id == user_id)
            .order_by(purchases.c.created_at.desc(), purchases.c.id.desc())
        ).fetchall()
    return [
        Purchase(
            user_id=row.user_id,
            stripe_session_id=row.stripe_session_id,
            stripe_customer_id=row.stripe_customer_id,
            subscription_id=row.subscription_id,
            amount=row.amount,
            currency=row.currency,
            plan=row.plan,
            status=row.status,
            created_at=row.created_at,
        )
        for row in rows
    ]


def _apply_paid_session(checkout: CheckoutSession, authenticated_member_id: Optional[str] = None) -> ReconcileResult:
    target = authenticated_member_id or checkout.client_reference_id or checkout.metadata.get("userId")
    if not target:
        billing_reconciliations_total.inc(labels={"outcome": "missing_subject"})
        raise MissingSubject("No user id on checkout session")

    plan = resolve_plan(checkout.price_id, checkout.metadata)
    member_id = upsert_member_account(
        target,
        plan=plan,
        email=checkout.customer_email,
        stripe_customer_id=checkout.customer_id,
        subscription_id=checkout.subscription_id,
    )

    record_purchase(Purchase(
        user_id=member_id,
        stripe_session_id=checkout.session_id,
        stripe_customer_id=checkout.customer_id,
        subscription_id=checkout.subscription_id,
        amount=checkout.amount_total or 0,
        currency=checkout.currency or "usd",
        plan=plan,
        status="completed",
    ))

    billing_reconciliations_total.inc(labels={"outcome": "success"})
    log_event(
        "info",
        "billing.reconciled",
        user_id=member_id,
        extra={"plan": plan, "stripe_session_id": checkout.session_id},
    )
    return ReconcileResult(member_id=member_id, plan=plan, limits=limits_for(plan))


def reconcile(
    session_id: Optional[str],
    authenticated_member_id: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> ReconcileResult:
    """
    Turn a paid checkout session into a member account.

    Raises:
        MissingSession: no session id (400)
        SessionNotFound: provider does not know the session (404)
        PaymentNotCompleted: session is not paid (402)
        MissingSubject: no member id could be determined (400)
        BillingProviderError: provider failure (500)
    """
    if not session_id:
        billing_reconciliations_total.inc(labels={"outcome": "missing_session"})
        raise MissingSession("Missing session_id")

    provider = _require_provider(provider)
    try:
        checkout = provider.retrieve_checkout_session(session_id)
    except BillingProviderError:
        billing_reconciliations_total.inc(labels={"outcome": "provider_error"})
        raise

    if checkout is None:
        billing_reconciliations_total.inc(labels={"outcome": "not_found"})
        raise SessionNotFound("Session not found")
    if not checkout.is_paid:
        billing_reconciliations_total.inc(labels={"outcome": "unpaid"})
        raise PaymentNotCompleted(
            "Session not paid",
            details={"payment_status": checkout.payment_status, "status": checkout.status},
        )

    return _apply_paid_session(checkout, authenticated_member_id)


def checkout_reference(identity: Optional[Identity]) -> str:
    if identity is None:
        return f"guest_{uuid4()}"
    if isinstance(identity, GuestIdentity):
        return f"guest_{identity.guest_id}"
    return identity.member_id


def start_checkout(
    identity: Optional[Identity],
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> CheckoutLink:
    """Create a subscription checkout session for the caller."""
    provider = _require_provider(provider)
    price_id = settings.STRIPE_PRICE_ID
    if not price_id:
        raise BillingProviderError("STRIPE_PRICE_ID not configured")

    reference = checkout_reference(identity)
    app_url = settings.APP_URL.rstrip("/")
    link = provider.create_checkout_session(
        price_id=price_id,
        client_reference_id=reference,
        success_url=success_url
        or settings.STRIPE_SUCCESS_URL
        or f"{app_url}/create-account?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or settings.STRIPE_CANCEL_URL or f"{app_url}/create-account?canceled=true",
        metadata={"userId": reference, "plan": DEFAULT_MEMBER_PLAN, "priceId": price_id},
    )
    log_event("info", "billing.checkout_started", user_id=reference, extra={"stripe_session_id": link.session_id})
    return link


def backfill_purchases(
    member_id: str,
    email: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> List[Purchase]:
    """
    Import the member's provider charges as purchases, then list them.

    Charges whose id is already recorded are skipped. A customer id found
    by email lookup is saved on the account. With billing disabled only the
    recorded purchases are returned.
    """
    provider = provider or get_provider()
    if not provider:
        return list_purchases(member_id)
    account = get_account(member_id)
    customer_id = account.stripe_customer_id if account else None
    lookup_email = email or (account.email if account else None)

    if not customer_id and lookup_email:
        customer_id = provider.find_customer_by_email(lookup_email)
        if customer_id and account:
            with get_db_session() as session:
                session.execute(
                    update(accounts)
                    .where(accounts.c.user_id == member_id)
                    .values(stripe_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
                )

    if not customer_id:
        return list_purchases(member_id)

    imported = 0
    for charge in provider.list_charges(customer_id, limit=100):
        written = record_purchase(Purchase(
            user_id=member_id,
            stripe_session_id=charge.charge_id,
            stripe_customer_id=charge.customer_id or customer_id,
            subscription_id=charge.subscription_id,
            amount=charge.amount,
            currency=charge.currency,
            plan="subscription" if charge.subscription_id else "one-time",
            status=charge.status,
            created_at=charge.created_at,
        ))
        imported += int(written)

    if imported:
        log_event("info", "billing.purchases_backfilled", user_id=member_id, extra={"imported": imported})
    return list_purchases(member_id)


def apply_subscription_state(result: BillingWebhookResult) -> Optional[str]:
    """Sync membership from a subscription event. Returns the member id touched."""
    if not result.customer_id:
        return None

    with get_db_session() as session:
        row = session.execute(
            select(accounts.c.user_id).where(accounts.c.stripe_customer_id == result.customer_id)
        ).first()
        if not row:
            log_event(
                "warning",
                "billing.subscription_unknown_customer",
                event_type=result.event_type,
                extra={"stripe_customer_id": result.customer_id},
            )
            return None

        if result.event_type == "customer.subscription.deleted":
            values = {"is_member": False, "subscription_status": "canceled"}
        else:
            values = {
                "is_member": result.status == "active",
                "subscription_status": result.status,
                "plan": resolve_plan(result.price_id, result.metadata),
            }
        if result.subscription_id:
            values["subscription_id"] = result.subscription_id

        session.execute(
            update(accounts)
            .where(accounts.c.user_id == row.user_id)
            .values(updated_at=datetime.now(timezone.utc), **values)
        )
        return row.user_id


def _dispatch(result: BillingWebhookResult) -> None:
    if result.event_type == "checkout.session.completed":
        if result.session is None or not result.session.is_paid:
            log_event("info", "billing.checkout_unpaid", event_type=result.event_type)
            return
        _apply_paid_session(result.session)
    elif result.event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ):
        member_id = apply_subscription_state(result)
        log_event(
            "info",
            "billing.subscription_synced",
            user_id=member_id,
            event_type=result.event_type,
            extra={"status": result.status},
        )
    elif result.event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        # Usage counters are monotonic; invoices never reset them
        log_event(
            "warning" if result.event_type.endswith("failed") else "info",
            "billing.invoice",
            event_type=result.event_type,
            extra={"stripe_customer_id": result.customer_id, "subscription_id": result.subscription_id},
        )
    else:
        log_event("info", "billing.webhook_unhandled", event_type=result.event_type)


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Record the event id; skip it if an earlier delivery was processed,
       re-apply it if an earlier delivery failed
    3. Apply state changes
    4. Mark as processed, or store the error and re-raise

    Raises:
        BillingWebhookError: If billing is disabled or the signature is invalid
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == result.event_id)
            ).first()
            if existing and existing.processed:
                log_event("info", "billing.webhook_duplicate", event_type=result.event_type)
                return result
            if existing:
                log_event("info", "billing.webhook_redelivery", event_type=result.event_type)
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == result.event_id)
                    .values(payload_hash=payload_hash, error=None)
                )
            else:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
    except IntegrityError:
        # Another delivery of the same event won the insert
        return result

    try:
        _dispatch(result)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e))
            )
        log_event(
            "error",
            "billing.webhook_failed",
            event_type=result.event_type,
            error_code=getattr(e, "code", "internal_error"),
            extra={"error": str(e)},
        )
        raise

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == result.event_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc))
        )
    return result
