from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Purchase(BaseModel):
    """A completed checkout, keyed by the provider session id."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    stripe_session_id: str
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    plan: Optional[str] = None
    status: str = "completed"
    created_at: Optional[datetime] = None
