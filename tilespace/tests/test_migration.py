"""
Guest-to-member migration.

Validation happens before any write; writes are per-entity upserts keyed by
the guest ids, so replays never duplicate rows.
"""
import pytest
from sqlalchemy import func, select

from tilespace.core.database import contacts, dashboards, get_db_session, notes, tiles, workspaces
from tilespace.core.errors import ValidationError
from tilespace.features.accounts.service import get_account, set_migration_needed
from tilespace.features.migration.service import complete_migration, migrate, validate_snapshot


def make_dashboard(ws_id, index):
    dash_id = f"{ws_id}_dash{index}"
    return {
        "id": dash_id,
        "name": f"Dashboard {index}",
        "workspaceId": ws_id,
        "tiles": [
            {"id": f"{dash_id}_tile{i}", "title": f"Tile {i}", "content": "Body", "prompt": "p"}
            for i in range(3)
        ],
        "contacts": [{"id": f"{dash_id}_contact{i}", "name": f"Contact {i}"} for i in range(2)],
        "notes": [{"id": f"{dash_id}_note0", "title": "Note", "content": "Remember"}],
    }


def make_snapshot(workspace_count=2):
    return {
        "workspaceData": {
            "workspaces": [
                {
                    "id": f"ws{w}",
                    "name": f"Company {w}",
                    "createdAt": "2024-05-01T10:00:00.000Z",
                    "dashboards": [make_dashboard(f"ws{w}", 0)],
                }
                for w in range(workspace_count)
            ]
        }
    }


def count(table, user_id):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(table).where(table.c.user_id == user_id)
        ).scalar()


def test_migrate_counts():
    request = validate_snapshot(make_snapshot())

    stats = migrate("user_m", request.workspace_data)

    assert stats.to_dict() == {
        "workspacesMigrated": 2,
        "dashboardsMigrated": 2,
        "tilesMigrated": 6,
        "contactsMigrated": 4,
        "notesMigrated": 2,
        "errors": [],
    }
    assert count(tiles, "user_m") == 6
    assert count(contacts, "user_m") == 4


def test_replay_updates_instead_of_duplicating():
    payload = make_snapshot()
    migrate("user_m", validate_snapshot(payload).workspace_data)

    payload["workspaceData"]["workspaces"][0]["name"] = "Renamed"
    stats = migrate("user_m", validate_snapshot(payload).workspace_data)

    assert stats.errors == []
    assert count(workspaces, "user_m") == 2
    assert count(tiles, "user_m") == 6
    with get_db_session() as session:
        name = session.execute(
            select(workspaces.c.name).where(workspaces.c.user_id == "user_m", workspaces.c.id == "ws0")
        ).scalar()
    assert name == "Renamed"


def test_existing_member_data_is_untouched():
    migrate("user_m", validate_snapshot(make_snapshot(1)).workspace_data)
    other = make_snapshot(1)
    other["workspaceData"]["workspaces"][0]["id"] = "ws_other"
    other["workspaceData"]["workspaces"][0]["dashboards"] = []

    migrate("user_m", validate_snapshot(other).workspace_data)

    assert count(workspaces, "user_m") == 2
    assert count(dashboards, "user_m") == 1


def test_too_many_workspaces_rejected_before_write():
    with pytest.raises(ValidationError) as exc_info:
        validate_snapshot(make_snapshot(11))

    assert exc_info.value.status_code == 400
    assert count(workspaces, "user_m") == 0


def test_required_fields_enforced():
    payload = make_snapshot(1)
    del payload["workspaceData"]["workspaces"][0]["dashboards"][0]["tiles"][0]["content"]

    with pytest.raises(ValidationError):
        validate_snapshot(payload)


def test_unknown_fields_ignored():
    payload = make_snapshot(1)
    payload["workspaceData"]["workspaces"][0]["color"] = "teal"

    assert validate_snapshot(payload).workspace_data.workspaces[0].id == "ws0"


def test_mismatched_and_duplicate_entities_are_reported():
    payload = make_snapshot(1)
    workspace = payload["workspaceData"]["workspaces"][0]
    stray = make_dashboard("ws_elsewhere", 1)
    workspace["dashboards"].append(stray)
    workspace["dashboards"][0]["notes"].append({"id": "ws0_dash0_note0", "content": "dup"})
    payload["workspaceData"]["workspaces"].append(dict(workspace))

    stats = migrate("user_m", validate_snapshot(payload).workspace_data)

    assert stats.workspaces_migrated == 1
    assert stats.dashboards_migrated == 1
    assert stats.notes_migrated == 1
    assert "Duplicate workspace id detected: ws0" in stats.errors
    assert "Dashboard ws_elsewhere_dash1 has mismatched workspaceId ws_elsewhere" in stats.errors
    assert "Duplicate note id ws0_dash0_note0 in dashboard ws0_dash0" in stats.errors


def test_complete_migration_marks_account():
    outcome = complete_migration("user_m", validate_snapshot(make_snapshot(1)))

    account = get_account("user_m")
    assert outcome.skipped is False
    assert account.migration_needed is False
    assert account.migrated_at is not None


def test_complete_migration_skips_when_already_done():
    complete_migration("user_m", validate_snapshot(make_snapshot(1)))

    second = complete_migration("user_m", validate_snapshot(make_snapshot(2)))

    assert second.skipped is True
    assert count(workspaces, "user_m") == 1


def test_complete_migration_runs_again_after_new_upgrade_or_force():
    complete_migration("user_m", validate_snapshot(make_snapshot(1)))

    set_migration_needed("user_m", True)
    assert complete_migration("user_m", validate_snapshot(make_snapshot(2))).skipped is False

    forced = make_snapshot(2)
    forced["force"] = True
    assert complete_migration("user_m", validate_snapshot(forced)).skipped is False


def test_migration_endpoint(client, member_headers):
    resp = client.post("/api/migrate-guest-data", json=make_snapshot(), headers=member_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["stats"]["tilesMigrated"] == 6
    assert "warning" not in body


def test_migration_endpoint_requires_member(client):
    resp = client.post("/api/migrate-guest-data", json=make_snapshot())

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_migration_endpoint_rejects_oversized_snapshot(client, member_headers):
    resp = client.post("/api/migrate-guest-data", json=make_snapshot(11), headers=member_headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"
    assert count(workspaces, "user_member_1") == 0


def test_migration_endpoint_warns_on_partial_failure(client, member_headers):
    payload = make_snapshot(1)
    payload["workspaceData"]["workspaces"][0]["dashboards"][0]["workspaceId"] = "elsewhere"

    resp = client.post("/api/migrate-guest-data", json=payload, headers=member_headers)

    body = resp.json()
    assert resp.status_code == 200
    assert body["warning"]
    assert body["stats"]["errors"]


def test_dashboard_id_reused_across_workspaces_is_reported():
    payload = make_snapshot(2)
    second = payload["workspaceData"]["workspaces"][1]
    reused = make_dashboard("ws1", 0)
    reused["id"] = "ws0_dash0"
    for key in ("tiles", "contacts", "notes"):
        for item in reused[key]:
            item["id"] = "copy_" + item["id"]
    second["dashboards"] = [reused]

    stats = migrate("user_m", validate_snapshot(payload).workspace_data)

    assert stats.dashboards_migrated == 1
    assert stats.tiles_migrated == 3
    assert "Duplicate dashboard id ws0_dash0 in workspace ws1" in stats.errors
    with get_db_session() as session:
        owner = session.execute(
            select(dashboards.c.workspace_id).where(dashboards.c.user_id == "user_m", dashboards.c.id == "ws0_dash0")
        ).scalar()
        tile_workspaces = set(session.execute(select(tiles.c.workspace_id).where(tiles.c.user_id == "user_m")).scalars())
    assert owner == "ws0"
    assert tile_workspaces == {"ws0"}


def test_dashboard_template_id_is_kept(client, member_headers):
    payload = make_snapshot(1)
    payload["workspaceData"]["workspaces"][0]["dashboards"][0]["templateId"] = "tpl_sales"

    client.post("/api/migrate-guest-data", json=payload, headers=member_headers)

    dashboard = client.get("/api/workspace", headers=member_headers).json()["workspaces"][0]["dashboards"][0]
    assert dashboard["templateId"] == "tpl_sales"
