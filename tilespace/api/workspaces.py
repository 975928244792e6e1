"""
Workspace content routes.

Guests write to the in-memory guest cache, members to durable tables; every
mutation passes the usage gate first.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from tilespace.core.identity import Identity, current_identity
from tilespace.features.ai.service import get_client
from tilespace.features.workspaces.guest_store import GuestWorkspaceCache
from tilespace.features.workspaces.service import (
    add_contact,
    add_note,
    add_tile,
    chat_with_contact,
    chat_with_tile,
    create_workspace,
    list_workspaces,
    regenerate_tile,
)


router = APIRouter(prefix="/api/workspace", tags=["workspace"])


def get_guest_cache(request: Request) -> GuestWorkspaceCache:
    return request.app.state.guest_cache


def get_ai_client():
    return get_client()


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WorkspaceCreateRequest(_Body):
    name: str
    website: Optional[str] = None
    dashboard_name: str = Field(default="Main Dashboard", alias="dashboardName")


class ContactCreateRequest(_Body):
    dashboard_id: str = Field(alias="dashboardId")
    name: str
    job_title: Optional[str] = Field(default=None, alias="jobTitle")
    linkedin_url: Optional[str] = Field(default=None, alias="linkedinUrl")
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None


class NoteCreateRequest(_Body):
    dashboard_id: str = Field(alias="dashboardId")
    title: str
    content: str


class TileCreateRequest(_Body):
    dashboard_id: str = Field(alias="dashboardId")
    title: str
    prompt: str
    category: Optional[str] = None


class TileChatRequest(_Body):
    message: str
    dashboard_id: Optional[str] = Field(default=None, alias="dashboardId")


class TileRegenerateRequest(_Body):
    prompt: Optional[str] = None
    dashboard_id: Optional[str] = Field(default=None, alias="dashboardId")


class ContactChatRequest(_Body):
    message: str


@router.get("")
def get_workspaces(
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
):
    return {"workspaces": list_workspaces(identity, cache=cache)}


@router.post("")
def post_workspace(
    body: WorkspaceCreateRequest,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
):
    workspace = create_workspace(
        identity, body.name, cache=cache, website=body.website, dashboard_name=body.dashboard_name
    )
    return {"success": True, "workspace": workspace}


@router.post("/contacts")
def post_contact(
    body: ContactCreateRequest,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
):
    details = body.model_dump(by_alias=True, exclude={"dashboard_id", "name"})
    contact = add_contact(identity, body.dashboard_id, body.name, cache=cache, details=details)
    return {"success": True, "contact": contact}


@router.post("/notes")
def post_note(
    body: NoteCreateRequest,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
):
    note = add_note(identity, body.dashboard_id, body.title, body.content, cache=cache)
    return {"success": True, "note": note}


@router.post("/tiles")
def post_tile(
    body: TileCreateRequest,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
    client=Depends(get_ai_client),
):
    tile = add_tile(
        identity, body.dashboard_id, body.title, body.prompt,
        cache=cache, client=client, category=body.category,
    )
    return {"success": True, "tile": tile}


@router.post("/tiles/{tile_id}/chat")
def post_tile_chat(
    tile_id: str,
    body: TileChatRequest,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
    client=Depends(get_ai_client),
):
    return chat_with_tile(
        identity, tile_id, body.message, cache=cache, client=client, dashboard_id=body.dashboard_id
    )


@router.post("/tiles/{tile_id}/regenerate")
def post_tile_regenerate(
    tile_id: str,
    body: Optional[TileRegenerateRequest] = None,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
    client=Depends(get_ai_client),
):
    body = body or TileRegenerateRequest()
    tile = regenerate_tile(
        identity, tile_id, cache=cache, client=client, prompt=body.prompt, dashboard_id=body.dashboard_id
    )
    return {"success": True, "tile": tile}


@router.post("/contacts/{contact_id}/chat")
def post_contact_chat(
    contact_id: str,
    body: ContactChatRequest,
    identity: Identity = Depends(current_identity),
    cache: GuestWorkspaceCache = Depends(get_guest_cache),
    client=Depends(get_ai_client),
):
    return chat_with_contact(identity, contact_id, body.message, cache=cache, client=client)
