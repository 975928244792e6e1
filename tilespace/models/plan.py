"""
Plan model.

Plans are capability tiers (guest, member, business) with a ceiling per
quota kind. Pricing lives with the billing provider, not here.
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


QUOTA_KINDS = (
    "companiesCount",
    "contactsCount",
    "notesCount",
    "tilesCount",
    "tileChatsCount",
    "contactChatsCount",
    "regenerationsCount",
    "assetsCount",
    "tokensUsed",
)


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    is_default: bool = False
    limits: Dict[str, int]
    created_at: Optional[datetime] = None
