from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from tilespace.core.identity import Identity, MemberIdentity, current_identity
from tilespace.features.accounts.service import get_account
from tilespace.features.plans.service import limits_for_identity, plan_for
from tilespace.features.usage.service import get_usage


router = APIRouter(tags=["usage"])


@router.get("/api/usage")
def usage_endpoint(identity: Identity = Depends(current_identity)):
    """Current usage, ceilings and plan for the caller (guest or member)."""
    is_member = False
    if isinstance(identity, MemberIdentity):
        account = get_account(identity.member_id)
        is_member = bool(account and account.is_member)

    content = {
        "usage": get_usage(identity),
        "limits": limits_for_identity(identity),
        "plan": plan_for(identity),
        "isMember": is_member,
    }
    return JSONResponse(content=content, headers={"Cache-Control": "no-store"})
