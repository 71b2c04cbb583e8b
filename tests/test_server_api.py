"""HTTP API tests against the FastAPI app."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from httpx import ASGITransport, AsyncClient

from workboard.config import load_settings
from workboard.domain.models import User
from workboard.events.ws import WebSocketHub
from workboard.server.api import create_app
from workboard.server.auth import create_access_token

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def _configure(tmp_path: Path, data: dict) -> None:
    root = tmp_path / ".workboard"
    root.mkdir(parents=True, exist_ok=True)
    (root / "config.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")


@pytest.fixture
def app(tmp_path: Path):
    return create_app(data_dir=tmp_path, enable_cors=False, hub=WebSocketHub())


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _project(client: AsyncClient, members: list[str] | None = None) -> str:
    resp = await client.post("/api/projects", json={"name": "Website", "key": "web", "members": members or []}, headers=ALICE)
    assert resp.status_code == 201
    return resp.json()["project"]["id"]


async def _task(client: AsyncClient, project_id: str, title: str, **fields) -> dict:
    resp = await client.post(f"/api/projects/{project_id}/tasks", json={"title": title, **fields}, headers=ALICE)
    assert resp.status_code == 201, resp.text
    return resp.json()["task"]


@pytest.mark.anyio
async def test_root_and_auth_status(client: AsyncClient) -> None:
    root = await client.get("/")
    assert root.json()["status"] == "running"
    status = await client.get("/api/auth/status")
    assert status.json() == {"enabled": False, "policy": "allow_all"}


@pytest.mark.anyio
async def test_project_creation_adds_creator_as_member(client: AsyncClient) -> None:
    project_id = await _project(client, members=["bob"])
    resp = await client.get(f"/api/projects/{project_id}")
    project = resp.json()["project"]
    assert project["key"] == "WEB"
    assert project["members"] == ["alice", "bob"]


@pytest.mark.anyio
async def test_unknown_task_is_404(client: AsyncClient) -> None:
    resp = await client.get("/api/tasks/task-missing")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "not_found"


@pytest.mark.anyio
async def test_subtask_rollup_through_api(client: AsyncClient) -> None:
    project_id = await _project(client)
    parent = await _task(client, project_id, "Launch")
    for title in ("Copy", "Design"):
        resp = await client.post(f"/api/tasks/{parent['id']}/subtasks", json={"title": title}, headers=ALICE)
        assert resp.status_code == 201
    subtasks = (await client.get(f"/api/tasks/{parent['id']}/subtasks")).json()["tasks"]
    assert [t["title"] for t in subtasks] == ["Copy", "Design"]

    await client.post(f"/api/tasks/{subtasks[0]['id']}/status", json={"status": "completed"}, headers=ALICE)

    detail = (await client.get(f"/api/tasks/{parent['id']}")).json()
    assert detail["task"]["progress"] == 50
    assert detail["task_key"] == "WEB-1"
    assert len(detail["subtasks"]) == 2


@pytest.mark.anyio
async def test_dependency_cycle_is_409(client: AsyncClient) -> None:
    project_id = await _project(client)
    first = await _task(client, project_id, "First")
    second = await _task(client, project_id, "Second")

    ok = await client.post(f"/api/tasks/{second['id']}/dependencies", json={"depends_on": first["id"]}, headers=ALICE)
    assert ok.status_code == 200
    cycle = await client.post(f"/api/tasks/{first['id']}/dependencies", json={"depends_on": second["id"]}, headers=ALICE)
    assert cycle.status_code == 409
    assert cycle.json()["error"] == "cycle_detected"


@pytest.mark.anyio
async def test_blocked_transition_reports_blockers(client: AsyncClient) -> None:
    project_id = await _project(client)
    first = await _task(client, project_id, "Schema")
    second = await _task(client, project_id, "Migration")
    await client.post(f"/api/tasks/{second['id']}/dependencies", json={"depends_on": first["id"]}, headers=ALICE)

    check = await client.get(f"/api/tasks/{second['id']}/can-transition", params={"status": "in_progress"})
    assert check.json()["allowed"] is False

    resp = await client.post(f"/api/tasks/{second['id']}/status", json={"status": "in_progress"}, headers=ALICE)
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "blocked_by_dependency"
    assert [b["id"] for b in body["blocking"]] == [first["id"]]


@pytest.mark.anyio
async def test_stale_version_is_409(client: AsyncClient) -> None:
    project_id = await _project(client)
    task = await _task(client, project_id, "Copy")
    first = await client.patch(f"/api/tasks/{task['id']}", json={"title": "Copy v2", "version": task["version"]}, headers=ALICE)
    assert first.status_code == 200
    stale = await client.patch(f"/api/tasks/{task['id']}", json={"title": "Copy v3", "version": task["version"]}, headers=ALICE)
    assert stale.status_code == 409
    assert stale.json()["error"] == "concurrency_conflict"


@pytest.mark.anyio
async def test_invalid_status_is_400(client: AsyncClient) -> None:
    project_id = await _project(client)
    task = await _task(client, project_id, "Copy")
    resp = await client.post(f"/api/tasks/{task['id']}/status", json={"status": "sleeping"}, headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_operation"


@pytest.mark.anyio
async def test_null_progress_is_400_but_null_due_date_clears(client: AsyncClient) -> None:
    project_id = await _project(client)
    task = await _task(client, project_id, "Copy", due_date="2026-05-01T00:00:00+00:00")

    resp = await client.patch(f"/api/tasks/{task['id']}", json={"progress": None}, headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_operation"

    cleared = await client.patch(f"/api/tasks/{task['id']}", json={"due_date": None}, headers=ALICE)
    assert cleared.status_code == 200
    assert cleared.json()["task"]["due_date"] is None
    assert cleared.json()["task"]["progress"] == 0


@pytest.mark.anyio
async def test_milestone_status_cannot_be_patched(client: AsyncClient) -> None:
    project_id = await _project(client)
    created = await client.post(f"/api/projects/{project_id}/milestones", json={"name": "Beta"}, headers=ALICE)
    milestone_id = created.json()["milestone"]["id"]
    resp = await client.patch(f"/api/milestones/{milestone_id}", json={"status": "completed"}, headers=ALICE)
    assert resp.status_code == 400
    detail = (await client.get(f"/api/milestones/{milestone_id}")).json()
    assert detail["milestone"]["status"] == "pending"


@pytest.mark.anyio
async def test_milestone_progress_and_delete(client: AsyncClient) -> None:
    project_id = await _project(client)
    created = await client.post(
        f"/api/projects/{project_id}/milestones",
        json={"name": "Beta", "due_date": "2099-01-01T00:00:00+00:00"},
        headers=ALICE,
    )
    assert created.status_code == 201
    milestone_id = created.json()["milestone"]["id"]
    task = await _task(client, project_id, "Copy", milestone_id=milestone_id)
    await _task(client, project_id, "Design", milestone_id=milestone_id)
    await client.post(f"/api/tasks/{task['id']}/status", json={"status": "completed"}, headers=ALICE)

    detail = (await client.get(f"/api/milestones/{milestone_id}")).json()
    assert detail["milestone"]["progress"] == 50
    assert detail["milestone"]["status"] == "in_progress"

    deleted = (await client.delete(f"/api/milestones/{milestone_id}", headers=ALICE)).json()
    assert deleted["detached_tasks"] == 2
    refreshed = (await client.get(f"/api/tasks/{task['id']}")).json()
    assert refreshed["task"]["milestone_id"] is None


@pytest.mark.anyio
async def test_phase_duplicate(client: AsyncClient) -> None:
    project_id = await _project(client)
    phase = (await client.post(f"/api/projects/{project_id}/phases", json={"name": "Discovery"}, headers=ALICE)).json()["phase"]
    await _task(client, project_id, "Interviews", phase_id=phase["id"])

    dup = await client.post(f"/api/phases/{phase['id']}/duplicate", json={"include_tasks": True}, headers=ALICE)
    assert dup.status_code == 201
    copy = dup.json()["phase"]
    assert copy["name"] == "Discovery (Copy)"

    progress = (await client.get(f"/api/phases/{copy['id']}/progress")).json()["progress"]
    assert progress["total_tasks"] == 1


@pytest.mark.anyio
async def test_notification_inbox_flow(client: AsyncClient) -> None:
    project_id = await _project(client, members=["bob"])
    await _task(client, project_id, "Copy", assignee_ids=["bob"])

    count = (await client.get("/api/notifications/unread-count", headers=BOB)).json()
    assert count == {"count": 1}
    inbox = (await client.get("/api/notifications", headers=BOB)).json()
    notification_id = inbox["notifications"][0]["id"]
    assert inbox["notifications"][0]["type"] == "task_assigned"

    # Another user cannot touch bob's notification.
    stolen = await client.patch(f"/api/notifications/{notification_id}/read", headers=ALICE)
    assert stolen.status_code == 404

    read = await client.patch(f"/api/notifications/{notification_id}/read", headers=BOB)
    assert read.json()["notification"]["read"] is True
    assert (await client.get("/api/notifications/unread-count", headers=BOB)).json() == {"count": 0}


@pytest.mark.anyio
async def test_preferences_and_mute(client: AsyncClient) -> None:
    project_id = await _project(client, members=["bob"])

    prefs = await client.put(
        "/api/notifications/preferences",
        json={"quiet_hours_enabled": True, "quiet_hours_start": "22:00", "quiet_hours_end": "07:00"},
        headers=BOB,
    )
    assert prefs.json()["preferences"]["quiet_hours_start"] == "22:00"

    bad = await client.put("/api/notifications/preferences", json={"quiet_hours_start": "25:99"}, headers=BOB)
    assert bad.status_code == 400

    muted = (await client.post(f"/api/notifications/preferences/mute/{project_id}", headers=BOB)).json()
    assert muted == {"project_id": project_id, "muted": True}

    await _task(client, project_id, "Copy", assignee_ids=["bob"])
    assert (await client.get("/api/notifications/unread-count", headers=BOB)).json() == {"count": 0}


@pytest.mark.anyio
async def test_role_policy_rejects_team_member(tmp_path: Path) -> None:
    _configure(tmp_path, {"auth": {"policy": "role_hierarchy"}})
    app = create_app(data_dir=tmp_path, enable_cors=False, hub=WebSocketHub())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.post("/api/projects", json={"name": "Website", "key": "web"}, headers=BOB)
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


@pytest.mark.anyio
async def test_auth_enabled_requires_token(tmp_path: Path) -> None:
    _configure(tmp_path, {"auth": {"enabled": True, "secret_key": "s3cret"}})
    app = create_app(data_dir=tmp_path, enable_cors=False, hub=WebSocketHub())
    app.state.services.container.users.upsert(User(id="alice", email="alice@example.com"))
    token = create_access_token(load_settings(tmp_path, env={}), "alice")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        anonymous = await c.get("/api/me", headers=ALICE)
        assert anonymous.status_code == 401
        me = await c.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json() == {"user_id": "alice", "role": "team_member"}
