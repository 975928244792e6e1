"""
Workspace content service.

Every mutation goes through the usage gate first, then to storage picked by
identity: guests write to the GuestWorkspaceCache, members to the durable
tables. Cheap writes reserve quota atomically (and release it if the write
fails); AI-backed writes check first and count only after generation.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update

from tilespace.core.database import get_db_session, workspaces, dashboards, tiles, contacts, notes
from tilespace.core.errors import NotFoundError, ValidationError
from tilespace.core.identity import GuestIdentity, Identity
from tilespace.core.logging import log_event
from tilespace.features.ai.service import generate_tile_content, history_entry
from tilespace.features.usage.service import (
    check_limit,
    enforce,
    increment_usage,
    release_usage,
    reserve_usage,
)
from tilespace.features.workspaces.guest_store import GuestWorkspaceCache

CONTACT_FIELDS = ("jobTitle", "linkedinUrl", "email", "phone", "company", "notes")

DEFAULT_REGENERATE_PROMPT = "Regenerate the previous insight with updated information."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


# Row serializers (camelCase, same shape as guest cache entries)

def _tile_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "workspaceId": row.workspace_id,
        "dashboardId": row.dashboard_id,
        "title": row.title,
        "content": row.content,
        "prompt": row.prompt,
        "category": row.category,
        "model": row.model,
        "orderIndex": row.order_index,
        "totalTokens": row.total_tokens,
        "attempts": row.attempts,
        "history": row.history or [],
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


def _contact_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "workspaceId": row.workspace_id,
        "dashboardId": row.dashboard_id,
        "name": row.name,
        "jobTitle": row.job_title,
        "linkedinUrl": row.linkedin_url,
        "email": row.email,
        "phone": row.phone,
        "company": row.company,
        "notes": row.notes,
        "history": row.history or [],
        "createdAt": _iso(row.created_at),
    }


def _note_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "workspaceId": row.workspace_id,
        "dashboardId": row.dashboard_id,
        "title": row.title,
        "content": row.content,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


# Guest cache helpers

def _guest_dashboard(workspace_list: List[Dict[str, Any]], dashboard_id: str) -> Dict[str, Any]:
    for workspace in workspace_list:
        for dashboard in workspace.get("dashboards", []):
            if dashboard["id"] == dashboard_id:
                return dashboard
    raise NotFoundError("Dashboard not found")


def _guest_tile(workspace_list: List[Dict[str, Any]], tile_id: str, dashboard_id: Optional[str]) -> Dict[str, Any]:
    for workspace in workspace_list:
        for dashboard in workspace.get("dashboards", []):
            if dashboard_id and dashboard["id"] != dashboard_id:
                continue
            for tile in dashboard.get("tiles", []):
                if tile["id"] == tile_id:
                    return tile
    raise NotFoundError("Tile not found")


def _member_dashboard(session, member_id: str, dashboard_id: str):
    row = session.execute(
        select(dashboards).where(dashboards.c.user_id == member_id, dashboards.c.id == dashboard_id)
    ).first()
    if not row:
        raise NotFoundError("Dashboard not found")
    return row


def _reserved_write(identity: Identity, kind: str, write):
    """Reserve one unit of kind, run write, release the unit if write fails."""
    enforce(reserve_usage(identity, kind, 1))
    try:
        return write()
    except Exception:
        release_usage(identity, kind, 1)
        raise


def create_workspace(
    identity: Identity,
    name: str,
    *,
    cache: GuestWorkspaceCache,
    website: Optional[str] = None,
    dashboard_name: str = "Main Dashboard",
) -> Dict[str, Any]:
    """Create a workspace with one empty dashboard."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Workspace name is required")

    workspace_id = _new_id("ws")
    dashboard_id = _new_id("dash")
    now = _now()
    workspace = {
        "id": workspace_id,
        "name": name,
        "website": website,
        "createdAt": _iso(now),
        "updatedAt": _iso(now),
        "dashboards": [{
            "id": dashboard_id,
            "name": dashboard_name,
            "workspaceId": workspace_id,
            "bgColor": None,
            "templateId": None,
            "createdAt": _iso(now),
            "updatedAt": _iso(now),
            "tiles": [],
            "contacts": [],
            "notes": [],
        }],
    }

    if isinstance(identity, GuestIdentity):
        def _append(workspace_list):
            workspace_list.append(workspace)
            return workspace

        return _reserved_write(identity, "companiesCount", lambda: cache.update(identity.guest_id, _append))

    def _insert():
        with get_db_session() as session:
            session.execute(insert(workspaces).values(
                id=workspace_id, user_id=identity.member_id, name=name, website=website,
                created_at=now, updated_at=now,
            ))
            session.execute(insert(dashboards).values(
                id=dashboard_id, user_id=identity.member_id, workspace_id=workspace_id,
                name=dashboard_name, created_at=now, updated_at=now,
            ))
        return workspace

    return _reserved_write(identity, "companiesCount", _insert)


def add_contact(
    identity: Identity,
    dashboard_id: str,
    name: str,
    *,
    cache: GuestWorkspaceCache,
    details: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if not dashboard_id:
        raise ValidationError("dashboardId is required")
    details = {k: v for k, v in (details or {}).items() if k in CONTACT_FIELDS}
    contact_id = _new_id("contact")
    now = _now()

    if isinstance(identity, GuestIdentity):
        def _append(workspace_list):
            dashboard = _guest_dashboard(workspace_list, dashboard_id)
            contact = {
                "id": contact_id,
                "workspaceId": dashboard["workspaceId"],
                "dashboardId": dashboard_id,
                "name": name,
                **{field: details.get(field) for field in CONTACT_FIELDS},
                "history": [],
                "createdAt": _iso(now),
            }
            dashboard.setdefault("contacts", []).append(contact)
            return contact

        return _reserved_write(identity, "contactsCount", lambda: cache.update(identity.guest_id, _append))

    def _insert():
        with get_db_session() as session:
            dashboard = _member_dashboard(session, identity.member_id, dashboard_id)
            session.execute(insert(contacts).values(
                id=contact_id,
                user_id=identity.member_id,
                workspace_id=dashboard.workspace_id,
                dashboard_id=dashboard_id,
                name=name,
                job_title=details.get("jobTitle"),
                linkedin_url=details.get("linkedinUrl"),
                email=details.get("email"),
                phone=details.get("phone"),
                company=details.get("company"),
                notes=details.get("notes"),
                created_at=now,
                updated_at=now,
            ))
            row = session.execute(
                select(contacts).where(
                    contacts.c.user_id == identity.member_id,
                    contacts.c.dashboard_id == dashboard_id,
                    contacts.c.id == contact_id,
                )
            ).first()
            return _contact_dict(row)

    return _reserved_write(identity, "contactsCount", _insert)


def add_note(
    identity: Identity,
    dashboard_id: str,
    title: str,
    content: str,
    *,
    cache: GuestWorkspaceCache,
) -> Dict[str, Any]:
    title = (title or "").strip()
    content = (content or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if not content:
        raise ValidationError("Content is required")
    if not dashboard_id:
        raise ValidationError("dashboardId is required")
    note_id = _new_id("note")
    now = _now()

    if isinstance(identity, GuestIdentity):
        def _append(workspace_list):
            dashboard = _guest_dashboard(workspace_list, dashboard_id)
            note = {
                "id": note_id,
                "workspaceId": dashboard["workspaceId"],
                "dashboardId": dashboard_id,
                "title": title,
                "content": content,
                "createdAt": _iso(now),
                "updatedAt": _iso(now),
            }
            dashboard.setdefault("notes", []).append(note)
            return note

        return _reserved_write(identity, "notesCount", lambda: cache.update(identity.guest_id, _append))

    def _insert():
        with get_db_session() as session:
            dashboard = _member_dashboard(session, identity.member_id, dashboard_id)
            session.execute(insert(notes).values(
                id=note_id,
                user_id=identity.member_id,
                workspace_id=dashboard.workspace_id,
                dashboard_id=dashboard_id,
                title=title,
                content=content,
                created_at=now,
                updated_at=now,
            ))
            row = session.execute(
                select(notes).where(
                    notes.c.user_id == identity.member_id,
                    notes.c.dashboard_id == dashboard_id,
                    notes.c.id == note_id,
                )
            ).first()
            return _note_dict(row)

    return _reserved_write(identity, "notesCount", _insert)


def _record_tokens(identity: Identity, total_tokens: Optional[int]) -> None:
    if total_tokens:
        increment_usage(identity, "tokensUsed", total_tokens)


def add_tile(
    identity: Identity,
    dashboard_id: str,
    title: str,
    prompt: str,
    *,
    cache: GuestWorkspaceCache,
    client,
    category: Optional[str] = None,
) -> Dict[str, Any]:
    """Generate a tile's content with the model and store it."""
    title = (title or "").strip()
    prompt = (prompt or "").strip()
    if not title or not prompt:
        raise ValidationError("title and prompt are required")
    if not dashboard_id:
        raise ValidationError("dashboardId is required")

    enforce(check_limit(identity, "tilesCount", 1))
    enforce(check_limit(identity, "tokensUsed", 0))

    # Fail on a missing dashboard before spending a generation
    if isinstance(identity, GuestIdentity):
        _guest_dashboard(cache.get(identity.guest_id) or [], dashboard_id)
    else:
        with get_db_session() as session:
            _member_dashboard(session, identity.member_id, dashboard_id)

    result = generate_tile_content(client, prompt, title=title)
    tile_id = _new_id("tile")
    now = _now()

    if isinstance(identity, GuestIdentity):
        def _append(workspace_list):
            dashboard = _guest_dashboard(workspace_list, dashboard_id)
            existing = dashboard.setdefault("tiles", [])
            tile = {
                "id": tile_id,
                "workspaceId": dashboard["workspaceId"],
                "dashboardId": dashboard_id,
                "title": title,
                "content": result.content,
                "prompt": prompt,
                "category": category,
                "model": result.model,
                "orderIndex": len(existing),
                "totalTokens": result.total_tokens,
                "attempts": result.attempts,
                "history": result.history,
                "createdAt": _iso(now),
                "updatedAt": _iso(now),
            }
            existing.append(tile)
            return tile

        tile = cache.update(identity.guest_id, _append)
    else:
        with get_db_session() as session:
            dashboard = _member_dashboard(session, identity.member_id, dashboard_id)
            count = len(session.execute(
                select(tiles.c.pk).where(tiles.c.user_id == identity.member_id, tiles.c.dashboard_id == dashboard_id)
            ).all())
            session.execute(insert(tiles).values(
                id=tile_id,
                user_id=identity.member_id,
                workspace_id=dashboard.workspace_id,
                dashboard_id=dashboard_id,
                title=title,
                content=result.content,
                prompt=prompt,
                category=category,
                model=result.model,
                order_index=count,
                total_tokens=result.total_tokens,
                attempts=result.attempts,
                history=result.history,
                created_at=now,
                updated_at=now,
            ))
            row = session.execute(
                select(tiles).where(
                    tiles.c.user_id == identity.member_id,
                    tiles.c.dashboard_id == dashboard_id,
                    tiles.c.id == tile_id,
                )
            ).first()
            tile = _tile_dict(row)

    increment_usage(identity, "tilesCount", 1)
    _record_tokens(identity, result.total_tokens)
    log_event("info", "tile.created", user_id=identity.subject, extra={"tile_id": tile_id, "failed": result.failed})
    return tile


def chat_with_tile(
    identity: Identity,
    tile_id: str,
    message: str,
    *,
    cache: GuestWorkspaceCache,
    client,
    dashboard_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Send a follow-up message on a tile and append the exchange to its history."""
    message = (message or "").strip()
    if not message:
        raise ValidationError("Message is required")

    enforce(check_limit(identity, "tileChatsCount", 1))
    enforce(check_limit(identity, "tokensUsed", 0))

    if isinstance(identity, GuestIdentity):
        _guest_tile(cache.get(identity.guest_id) or [], tile_id, dashboard_id)
    else:
        _member_tile(identity.member_id, tile_id, dashboard_id)

    result = generate_tile_content(client, message, title="Chat Response")
    exchange = [history_entry("user", message), history_entry("assistant", result.content)]

    if isinstance(identity, GuestIdentity):
        def _append(workspace_list):
            tile = _guest_tile(workspace_list, tile_id, dashboard_id)
            tile.setdefault("history", []).extend(exchange)
            return tile["history"]

        history = cache.update(identity.guest_id, _append)
    else:
        row = _member_tile(identity.member_id, tile_id, dashboard_id)
        history = list(row.history or []) + exchange
        with get_db_session() as session:
            session.execute(
                update(tiles).where(tiles.c.pk == row.pk).values(history=history, updated_at=_now())
            )

    if not result.failed:
        increment_usage(identity, "tileChatsCount", 1)
        _record_tokens(identity, result.total_tokens)

    return {
        "tileId": tile_id,
        "reply": result.content,
        "failed": result.failed,
        "attempts": result.attempts,
        "model": result.model,
        "history": history,
    }


def _member_tile(member_id: str, tile_id: str, dashboard_id: Optional[str]):
    query = select(tiles).where(tiles.c.user_id == member_id, tiles.c.id == tile_id)
    if dashboard_id:
        query = query.where(tiles.c.dashboard_id == dashboard_id)
    with get_db_session() as session:
        row = session.execute(query).first()
    if not row:
        raise NotFoundError("Tile not found")
    return row


def regenerate_tile(
    identity: Identity,
    tile_id: str,
    *,
    cache: GuestWorkspaceCache,
    client,
    prompt: Optional[str] = None,
    dashboard_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Generate fresh content for an existing tile, from its stored prompt unless one is given."""
    override = (prompt or "").strip() or None

    enforce(check_limit(identity, "regenerationsCount", 1))
    enforce(check_limit(identity, "tokensUsed", 0))

    if isinstance(identity, GuestIdentity):
        current = _guest_tile(cache.get(identity.guest_id) or [], tile_id, dashboard_id)
        title, stored_prompt = current["title"], current.get("prompt")
    else:
        row = _member_tile(identity.member_id, tile_id, dashboard_id)
        title, stored_prompt = row.title, row.prompt
    resolved_prompt = override or stored_prompt or DEFAULT_REGENERATE_PROMPT

    result = generate_tile_content(client, resolved_prompt, title=title)
    now = _now()

    if isinstance(identity, GuestIdentity):
        def _apply(workspace_list):
            tile = _guest_tile(workspace_list, tile_id, dashboard_id)
            tile.update({
                "content": result.content,
                "prompt": resolved_prompt,
                "model": result.model,
                "totalTokens": result.total_tokens,
                "attempts": result.attempts,
                "updatedAt": _iso(now),
            })
            tile.setdefault("history", []).extend(result.history)
            return dict(tile)

        tile = cache.update(identity.guest_id, _apply)
    else:
        with get_db_session() as session:
            session.execute(
                update(tiles).where(tiles.c.pk == row.pk).values(
                    content=result.content,
                    prompt=resolved_prompt,
                    model=result.model,
                    total_tokens=result.total_tokens,
                    attempts=result.attempts,
                    history=list(row.history or []) + result.history,
                    updated_at=now,
                )
            )
            tile = _tile_dict(session.execute(select(tiles).where(tiles.c.pk == row.pk)).first())

    if not result.failed:
        increment_usage(identity, "regenerationsCount", 1)
        _record_tokens(identity, result.total_tokens)
    log_event("info", "tile.regenerated", user_id=identity.subject, extra={"tile_id": tile_id, "failed": result.failed})
    return tile


def _contact_prompt(contact: Dict[str, Any], message: str) -> str:
    known = [f"Name: {contact['name']}"]
    for label, key in (("Job title", "jobTitle"), ("Company", "company"), ("Notes", "notes")):
        if contact.get(key):
            known.append(f"{label}: {contact[key]}")
    return "You are helping a user with one of their contacts.\n" + "\n".join(known) + f"\n\n{message}"


def _guest_contact(workspace_list: List[Dict[str, Any]], contact_id: str) -> Dict[str, Any]:
    for workspace in workspace_list:
        for dashboard in workspace.get("dashboards", []):
            for contact in dashboard.get("contacts", []):
                if contact["id"] == contact_id:
                    return contact
    raise NotFoundError("Contact not found")


def _member_contact(member_id: str, contact_id: str):
    with get_db_session() as session:
        row = session.execute(
            select(contacts).where(contacts.c.user_id == member_id, contacts.c.id == contact_id)
        ).first()
    if not row:
        raise NotFoundError("Contact not found")
    return row


def chat_with_contact(
    identity: Identity,
    contact_id: str,
    message: str,
    *,
    cache: GuestWorkspaceCache,
    client,
) -> Dict[str, Any]:
    """Ask the model about a contact; the exchange is kept on the contact."""
    message = (message or "").strip()
    if not message:
        raise ValidationError("Message is required")

    enforce(check_limit(identity, "contactChatsCount", 1))
    enforce(check_limit(identity, "tokensUsed", 0))

    if isinstance(identity, GuestIdentity):
        contact = _guest_contact(cache.get(identity.guest_id) or [], contact_id)
    else:
        row = _member_contact(identity.member_id, contact_id)
        contact = _contact_dict(row)

    result = generate_tile_content(client, _contact_prompt(contact, message), title="Contact Chat")
    exchange = [history_entry("user", message), history_entry("assistant", result.content)]

    if isinstance(identity, GuestIdentity):
        def _append(workspace_list):
            stored = _guest_contact(workspace_list, contact_id)
            stored.setdefault("history", []).extend(exchange)
            return stored["history"]

        history = cache.update(identity.guest_id, _append)
    else:
        history = list(row.history or []) + exchange
        with get_db_session() as session:
            session.execute(
                update(contacts).where(contacts.c.pk == row.pk).values(history=history, updated_at=_now())
            )

    if not result.failed:
        increment_usage(identity, "contactChatsCount", 1)
        _record_tokens(identity, result.total_tokens)

    return {
        "contactId": contact_id,
        "reply": result.content,
        "failed": result.failed,
        "attempts": result.attempts,
        "model": result.model,
        "history": history,
    }


def list_workspaces(identity: Identity, *, cache: GuestWorkspaceCache) -> List[Dict[str, Any]]:
    """All workspaces of the subject with nested dashboards and content."""
    if isinstance(identity, GuestIdentity):
        return cache.get(identity.guest_id) or []

    member_id = identity.member_id
    with get_db_session() as session:
        ws_rows = session.execute(
            select(workspaces).where(workspaces.c.user_id == member_id).order_by(workspaces.c.created_at)
        ).all()
        dash_rows = session.execute(select(dashboards).where(dashboards.c.user_id == member_id)).all()
        tile_rows = session.execute(
            select(tiles).where(tiles.c.user_id == member_id).order_by(tiles.c.order_index)
        ).all()
        contact_rows = session.execute(select(contacts).where(contacts.c.user_id == member_id)).all()
        note_rows = session.execute(select(notes).where(notes.c.user_id == member_id)).all()

    by_dashboard: Dict[str, Dict[str, Any]] = {}
    result = []
    for ws in ws_rows:
        result.append({
            "id": ws.id,
            "name": ws.name,
            "website": ws.website,
            "createdAt": _iso(ws.created_at),
            "updatedAt": _iso(ws.updated_at),
            "dashboards": [],
        })
    workspaces_by_id = {ws["id"]: ws for ws in result}
    for d in dash_rows:
        parent = workspaces_by_id.get(d.workspace_id)
        if parent is None:
            continue
        dashboard = {
            "id": d.id,
            "name": d.name,
            "workspaceId": d.workspace_id,
            "bgColor": d.bg_color,
            "templateId": d.template_id,
            "createdAt": _iso(d.created_at),
            "updatedAt": _iso(d.updated_at),
            "tiles": [],
            "contacts": [],
            "notes": [],
        }
        parent["dashboards"].append(dashboard)
        by_dashboard[d.id] = dashboard

    for rows, key, serialize in (
        (tile_rows, "tiles", _tile_dict),
        (contact_rows, "contacts", _contact_dict),
        (note_rows, "notes", _note_dict),
    ):
        for row in rows:
            dashboard = by_dashboard.get(row.dashboard_id)
            if dashboard is not None:
                dashboard[key].append(serialize(row))
    return result
