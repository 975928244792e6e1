"""
Guest snapshot payload accepted by the migration endpoint.

Field names follow the client's camelCase JSON via aliases. Array lengths
are capped here so an oversized snapshot is rejected before any write.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_WORKSPACES = 10
MAX_DASHBOARDS_PER_WORKSPACE = 25
MAX_TILES_PER_DASHBOARD = 200
MAX_CONTACTS_PER_DASHBOARD = 200
MAX_NOTES_PER_DASHBOARD = 200


class _Snapshot(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TileSnapshot(_Snapshot):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    prompt: str = ""
    category: Optional[str] = None
    model: Optional[str] = None
    order_index: Optional[int] = Field(default=None, alias="orderIndex")
    total_tokens: Optional[int] = Field(default=None, alias="totalTokens")
    attempts: int = 0
    history: List[Any] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


class ContactSnapshot(_Snapshot):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    job_title: Optional[str] = Field(default=None, alias="jobTitle")
    linkedin_url: Optional[str] = Field(default=None, alias="linkedinUrl")
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class NoteSnapshot(_Snapshot):
    id: str = Field(min_length=1)
    title: Optional[str] = None
    content: str = Field(min_length=1)
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


class DashboardSnapshot(_Snapshot):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1, alias="workspaceId")
    bg_color: Optional[str] = Field(default=None, alias="bgColor")
    template_id: Optional[str] = Field(default=None, alias="templateId")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    tiles: List[TileSnapshot] = Field(default_factory=list, max_length=MAX_TILES_PER_DASHBOARD)
    contacts: List[ContactSnapshot] = Field(default_factory=list, max_length=MAX_CONTACTS_PER_DASHBOARD)
    notes: List[NoteSnapshot] = Field(default_factory=list, max_length=MAX_NOTES_PER_DASHBOARD)


class WorkspaceSnapshot(_Snapshot):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    website: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    dashboards: List[DashboardSnapshot] = Field(default_factory=list, max_length=MAX_DASHBOARDS_PER_WORKSPACE)


class WorkspaceData(_Snapshot):
    workspaces: List[WorkspaceSnapshot] = Field(max_length=MAX_WORKSPACES)


class MigrationRequest(_Snapshot):
    workspace_data: WorkspaceData = Field(alias="workspaceData")
    force: bool = False
