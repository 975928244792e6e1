"""
Billing provider protocol.

Business logic talks to this interface and to the normalized records below,
never to Stripe objects directly, so the provider can be faked in tests.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from tilespace.core.errors import AppError


@dataclass
class CheckoutSession:
    session_id: str
    payment_status: Optional[str] = None
    status: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid" or self.status == "complete"


@dataclass
class CheckoutLink:
    session_id: str
    url: Optional[str]


@dataclass
class Charge:
    charge_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount: int
    currency: str
    status: str
    created_at: Optional[datetime] = None


@dataclass
class BillingWebhookResult:
    """Normalized webhook event."""
    event_id: str
    event_type: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    price_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    session: Optional[CheckoutSession] = None


class BillingProvider(Protocol):
    def retrieve_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        """Return the session, or None when the provider does not know it.

        Raises:
            BillingProviderError: on any other provider failure
        """
        ...

    def create_checkout_session(
        self,
        price_id: str,
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutLink:
        ...

    def list_charges(self, customer_id: str, limit: int = 100) -> List[Charge]:
        ...

    def find_customer_by_email(self, email: str) -> Optional[str]:
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify the signature and parse the event.

        Raises:
            BillingWebhookError: if the signature is invalid or parsing fails
        """
        ...


class BillingProviderError(AppError):
    """Provider call failed; surfaced to clients as a generic 500."""
    code = "billing_provider_error"
    status_code = 500


class BillingWebhookError(BillingProviderError):
    code = "invalid_webhook"
    status_code = 400
