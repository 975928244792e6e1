"""
Guest-to-member data migration.

migrate() copies a validated guest snapshot into the member's durable
tables. It is best effort: every entity is written in its own transaction,
failures are collected in stats.errors, and nothing already written is
rolled back. Writes are upserts keyed by the guest entity ids, so replaying
the same snapshot updates rows instead of duplicating them. Rows the member
already owns that are not in the snapshot are never touched.

complete_migration() is the call-site guard around migrate(): it runs once
per paid upgrade and clears the account's migration_needed flag.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import SQLAlchemyError

from tilespace.core.database import get_db_session, workspaces, dashboards, tiles, contacts, notes
from tilespace.core.errors import ValidationError
from tilespace.core.logging import log_event
from tilespace.core.metrics import migration_entities_total
from tilespace.features.accounts.service import get_or_create_account, mark_migrated
from tilespace.features.migration.schemas import (
    DashboardSnapshot,
    MigrationRequest,
    WorkspaceData,
)


@dataclass
class MigrationStats:
    workspaces_migrated: int = 0
    dashboards_migrated: int = 0
    tiles_migrated: int = 0
    contacts_migrated: int = 0
    notes_migrated: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workspacesMigrated": self.workspaces_migrated,
            "dashboardsMigrated": self.dashboards_migrated,
            "tilesMigrated": self.tiles_migrated,
            "contactsMigrated": self.contacts_migrated,
            "notesMigrated": self.notes_migrated,
            "errors": list(self.errors),
        }


@dataclass
class MigrationOutcome:
    stats: MigrationStats
    skipped: bool = False


def validate_snapshot(payload: Any) -> MigrationRequest:
    """Parse a raw request body; raises ValidationError (400) on any violation."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid request body")
    try:
        return MigrationRequest.model_validate(payload)
    except PydanticValidationError as exc:
        details = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ]
        raise ValidationError("Invalid request body", details=details) from exc


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _upsert(table, key: Dict[str, Any], values: Dict[str, Any]) -> None:
    """Update the row matching key, or insert key+values when absent."""
    condition = and_(*[table.c[col] == val for col, val in key.items()])
    with get_db_session() as session:
        existing = session.execute(select(table.c.pk).where(condition)).first()
        if existing:
            session.execute(update(table).where(table.c.pk == existing.pk).values(**values))
        else:
            session.execute(insert(table).values(**key, **values))


def _error_text(exc: Exception) -> str:
    return str(getattr(exc, "orig", None) or exc)


def _migrate_dashboard_content(
    member_id: str,
    workspace_id: str,
    dashboard: DashboardSnapshot,
    created_at: datetime,
    updated_at: datetime,
    stats: MigrationStats,
) -> None:
    entity_key = {"user_id": member_id, "dashboard_id": dashboard.id}
    placement = {"workspace_id": workspace_id}

    seen = set()
    for position, tile in enumerate(dashboard.tiles):
        if tile.id in seen:
            stats.errors.append(f"Duplicate tile id {tile.id} in dashboard {dashboard.id}")
            continue
        seen.add(tile.id)
        try:
            _upsert(tiles, {**entity_key, "id": tile.id}, {
                **placement,
                "title": tile.title,
                "content": tile.content,
                "prompt": tile.prompt or "",
                "category": tile.category,
                "model": tile.model,
                "order_index": tile.order_index if tile.order_index is not None else position,
                "total_tokens": tile.total_tokens,
                "attempts": tile.attempts,
                "history": tile.history,
                "created_at": _parse_ts(tile.created_at) or created_at,
                "updated_at": _parse_ts(tile.updated_at) or updated_at,
            })
            stats.tiles_migrated += 1
            migration_entities_total.inc(labels={"entity": "tile"})
        except SQLAlchemyError as exc:
            stats.errors.append(f"Failed to migrate tile {tile.id}: {_error_text(exc)}")

    seen = set()
    for contact in dashboard.contacts:
        if contact.id in seen:
            stats.errors.append(f"Duplicate contact id {contact.id} in dashboard {dashboard.id}")
            continue
        seen.add(contact.id)
        contact_created = _parse_ts(contact.created_at) or created_at
        try:
            _upsert(contacts, {**entity_key, "id": contact.id}, {
                **placement,
                "name": contact.name,
                "job_title": contact.job_title,
                "linkedin_url": contact.linkedin_url,
                "email": contact.email,
                "phone": contact.phone,
                "company": contact.company,
                "notes": contact.notes,
                "created_at": contact_created,
                "updated_at": contact_created,
            })
            stats.contacts_migrated += 1
            migration_entities_total.inc(labels={"entity": "contact"})
        except SQLAlchemyError as exc:
            stats.errors.append(f"Failed to migrate contact {contact.id}: {_error_text(exc)}")

    seen = set()
    for note in dashboard.notes:
        if note.id in seen:
            stats.errors.append(f"Duplicate note id {note.id} in dashboard {dashboard.id}")
            continue
        seen.add(note.id)
        try:
            _upsert(notes, {**entity_key, "id": note.id}, {
                **placement,
                "title": note.title or "Note",
                "content": note.content,
                "created_at": _parse_ts(note.created_at) or created_at,
                "updated_at": _parse_ts(note.updated_at) or updated_at,
            })
            stats.notes_migrated += 1
            migration_entities_total.inc(labels={"entity": "note"})
        except SQLAlchemyError as exc:
            stats.errors.append(f"Failed to migrate note {note.id}: {_error_text(exc)}")


def migrate(member_id: str, snapshot: WorkspaceData) -> MigrationStats:
    stats = MigrationStats()
    if not member_id:
        stats.errors.append("userId is required")
        return stats

    now = datetime.now(timezone.utc)
    seen_workspaces = set()
    # Dashboard ids are unique per member, not per workspace
    seen_dashboards = set()

    for workspace in snapshot.workspaces:
        if workspace.id in seen_workspaces:
            stats.errors.append(f"Duplicate workspace id detected: {workspace.id}")
            continue
        seen_workspaces.add(workspace.id)

        ws_created = _parse_ts(workspace.created_at) or now
        ws_updated = _parse_ts(workspace.updated_at) or ws_created
        try:
            _upsert(workspaces, {"user_id": member_id, "id": workspace.id}, {
                "name": workspace.name,
                "website": workspace.website,
                "created_at": ws_created,
                "updated_at": ws_updated,
            })
        except SQLAlchemyError as exc:
            stats.errors.append(f"Failed to migrate workspace {workspace.id}: {_error_text(exc)}")
            continue
        stats.workspaces_migrated += 1
        migration_entities_total.inc(labels={"entity": "workspace"})

        for dashboard in workspace.dashboards:
            if dashboard.workspace_id != workspace.id:
                stats.errors.append(
                    f"Dashboard {dashboard.id} has mismatched workspaceId {dashboard.workspace_id}"
                )
                continue
            if dashboard.id in seen_dashboards:
                stats.errors.append(f"Duplicate dashboard id {dashboard.id} in workspace {workspace.id}")
                continue
            seen_dashboards.add(dashboard.id)

            dash_created = _parse_ts(dashboard.created_at) or ws_created
            dash_updated = _parse_ts(dashboard.updated_at) or ws_updated
            try:
                _upsert(dashboards, {"user_id": member_id, "id": dashboard.id}, {
                    "workspace_id": workspace.id,
                    "name": dashboard.name,
                    "bg_color": dashboard.bg_color,
                    "template_id": dashboard.template_id,
                    "created_at": dash_created,
                    "updated_at": dash_updated,
                })
            except SQLAlchemyError as exc:
                stats.errors.append(f"Failed to migrate dashboard {dashboard.id}: {_error_text(exc)}")
                continue

            _migrate_dashboard_content(member_id, workspace.id, dashboard, dash_created, dash_updated, stats)
            stats.dashboards_migrated += 1
            migration_entities_total.inc(labels={"entity": "dashboard"})

    return stats


def complete_migration(member_id: str, request: MigrationRequest) -> MigrationOutcome:
    """
    Run migrate() unless this member's upgrade was already migrated.

    An account that finished a migration and has no pending upgrade is
    skipped; request.force re-runs it (safe, since writes are upserts).
    The flag is cleared only on a run without errors so a partial run can
    be retried.
    """
    account = get_or_create_account(member_id)
    if account.migrated_at and not account.migration_needed and not request.force:
        log_event("info", "migration.skipped", user_id=member_id)
        return MigrationOutcome(stats=MigrationStats(), skipped=True)

    stats = migrate(member_id, request.workspace_data)
    if not stats.errors:
        mark_migrated(member_id)

    log_event(
        "warning" if stats.errors else "info",
        "migration.completed",
        user_id=member_id,
        extra={**{k: v for k, v in stats.to_dict().items() if k != "errors"}, "error_count": len(stats.errors)},
    )
    return MigrationOutcome(stats=stats)
