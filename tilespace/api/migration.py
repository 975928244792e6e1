"""
Guest data migration route.

POST /api/migrate-guest-data: copy the caller's guest snapshot into member storage.
"""
import json

from fastapi import APIRouter, Depends, Request

from tilespace.core.errors import ValidationError
from tilespace.core.identity import MemberIdentity, require_member
from tilespace.features.migration.service import complete_migration, validate_snapshot


router = APIRouter(tags=["migration"])


@router.post("/api/migrate-guest-data")
async def migrate_guest_data(request: Request, member: MemberIdentity = Depends(require_member)):
    """
    Returns:
        {"success": true, "stats": {...}, "warning"?: str, "skipped"?: true}

    Errors:
        401: not authenticated
        400: malformed body or snapshot over the size caps (nothing written)
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid JSON body") from exc

    migration_request = validate_snapshot(payload)
    outcome = complete_migration(member.member_id, migration_request)

    response = {"success": True, "stats": outcome.stats.to_dict()}
    if outcome.skipped:
        response["skipped"] = True
    if outcome.stats.errors:
        response["warning"] = "Some items failed to migrate"
    return response
