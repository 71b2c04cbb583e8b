"""Tests for the YAML-backed repositories."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from workboard.domain.models import Milestone, Notification, Task, TaskDependency, utcnow
from workboard.errors import ConcurrencyConflict, InvalidOperation, NotFound
from workboard.storage import Container


@pytest.fixture
def container(tmp_path: Path) -> Container:
    return Container(tmp_path)


def test_bootstrap_creates_state_files(tmp_path: Path) -> None:
    Container(tmp_path)
    root = tmp_path / ".workboard"
    assert (root / "tasks.yaml").exists()
    assert (root / "events.jsonl").exists()
    assert "schema_version" in (root / "config.yaml").read_text(encoding="utf-8")


def test_container_exposes_only_data_repositories(container: Container) -> None:
    assert not hasattr(container, "config")
    assert container.tasks.list() == []


class TestTaskRepository:
    def test_task_numbers_are_per_project(self, container: Container) -> None:
        a = container.tasks.create(Task(title="a", project_id="p1"))
        b = container.tasks.create(Task(title="b", project_id="p1"))
        c = container.tasks.create(Task(title="c", project_id="p2"))
        assert (a.task_number, b.task_number, c.task_number) == (1, 2, 1)
        assert a.version == 1

    def test_round_trip_through_yaml(self, container: Container) -> None:
        task = Task(title="persist", project_id="p1", dependencies=[TaskDependency("x")], labels=["ui"])
        container.tasks.create(task)
        loaded = container.tasks.get(task.id)
        assert loaded is not None
        assert loaded.dependencies[0].depends_on_task_id == "x"
        assert loaded.labels == ["ui"]

    def test_stale_upsert_raises_conflict(self, container: Container) -> None:
        task = container.tasks.create(Task(title="v", project_id="p1"))
        first = container.tasks.get(task.id)
        second = container.tasks.get(task.id)
        first.title = "first"
        container.tasks.upsert(first)
        second.title = "second"
        with pytest.raises(ConcurrencyConflict):
            container.tasks.upsert(second)
        assert container.tasks.get(task.id).title == "first"

    def test_update_bumps_version(self, container: Container) -> None:
        task = container.tasks.create(Task(title="v", project_id="p1"))
        updated = container.tasks.update(task.id, lambda t: setattr(t, "progress", 30))
        assert updated.version == 2
        assert container.tasks.get(task.id).progress == 30

    def test_update_missing_raises(self, container: Container) -> None:
        with pytest.raises(NotFound):
            container.tasks.update("nope", lambda t: None)

    def test_update_with_snapshot_sees_every_task(self, container: Container) -> None:
        parent = container.tasks.create(Task(title="parent", project_id="p1"))
        container.tasks.create(Task(title="child", project_id="p1", parent_task_id=parent.id))
        seen: list[str] = []

        def _mutate(task: Task, snapshot: list[Task]) -> None:
            seen.extend(sorted(t.title for t in snapshot))
            task.progress = 50

        updated = container.tasks.update_with_snapshot(parent.id, _mutate)
        assert seen == ["child", "parent"]
        assert updated.version == 2
        assert container.tasks.get(parent.id).progress == 50

    def test_update_with_snapshot_false_leaves_storage_untouched(self, container: Container) -> None:
        task = container.tasks.create(Task(title="v", project_id="p1"))

        def _skip(t: Task, snapshot: list[Task]) -> bool:
            t.progress = 90
            return False

        container.tasks.update_with_snapshot(task.id, _skip)
        stored = container.tasks.get(task.id)
        assert (stored.version, stored.progress) == (1, 0)
        with pytest.raises(NotFound):
            container.tasks.update_with_snapshot("nope", _skip)

    def test_push_unique_and_pull(self, container: Container) -> None:
        task = container.tasks.create(Task(title="w", project_id="p1"))
        container.tasks.push_unique(task.id, "watchers", "u1")
        container.tasks.push_unique(task.id, "watchers", "u1")
        assert container.tasks.get(task.id).watchers == ["u1"]
        container.tasks.pull(task.id, "watchers", "u1")
        assert container.tasks.get(task.id).watchers == []

    def test_push_rejects_unknown_field(self, container: Container) -> None:
        task = container.tasks.create(Task(title="w", project_id="p1"))
        with pytest.raises(InvalidOperation):
            container.tasks.push_unique(task.id, "title", "x")

    def test_increment_hours(self, container: Container) -> None:
        task = container.tasks.create(Task(title="h", project_id="p1"))
        container.tasks.increment(task.id, "actual_hours", 1.5)
        container.tasks.increment(task.id, "actual_hours", 2)
        assert container.tasks.get(task.id).actual_hours == 3.5

    def test_delete_many_and_strip_refs(self, container: Container) -> None:
        a = container.tasks.create(Task(title="a", project_id="p1"))
        b = container.tasks.create(Task(title="b", project_id="p1", dependencies=[TaskDependency(a.id)]))
        assert container.tasks.delete_many({a.id}) == 1
        assert container.tasks.pull_dependency_refs({a.id}) == 1
        assert container.tasks.get(b.id).dependencies == []

    def test_unset_field(self, container: Container) -> None:
        container.tasks.create(Task(title="a", project_id="p1", milestone_id="m1"))
        container.tasks.create(Task(title="b", project_id="p1", milestone_id="m2"))
        assert container.tasks.unset_field("milestone_id", "m1") == 1
        assert sorted(str(t.milestone_id) for t in container.tasks.list()) == ["None", "m2"]


def test_milestone_order_is_assigned_per_project(container: Container) -> None:
    first = container.milestones.create(Milestone(project_id="p1", name="M1"))
    second = container.milestones.create(Milestone(project_id="p1", name="M2"))
    other = container.milestones.create(Milestone(project_id="p2", name="X"))
    assert (first.order, second.order, other.order) == (0, 1, 0)


class TestNotificationRepository:
    def test_expired_rows_are_invisible(self, container: Container) -> None:
        old = Notification(user_id="u1", title="old", created_at=(utcnow() - timedelta(days=91)).isoformat())
        fresh = Notification(user_id="u1", title="fresh")
        container.notifications.create(old)
        container.notifications.create(fresh)
        assert [n.title for n in container.notifications.list_for_user("u1")] == ["fresh"]
        assert container.notifications.get(old.id) is None

    def test_default_ttl_is_90_days(self) -> None:
        n = Notification(user_id="u1", created_at="2026-01-01T00:00:00+00:00")
        assert n.expires_at.startswith("2026-04-01")

    def test_delete_read_before(self, container: Container) -> None:
        stamp = (utcnow() - timedelta(days=40)).isoformat()
        read_old = Notification(user_id="u1", title="a", read=True, created_at=stamp)
        unread_old = Notification(user_id="u1", title="b", created_at=stamp)
        read_new = Notification(user_id="u1", title="c", read=True)
        for n in (read_old, unread_old, read_new):
            container.notifications.create(n)
        cutoff = (utcnow() - timedelta(days=30)).isoformat()
        assert container.notifications.delete_read_before(cutoff) == 1
        assert {n.title for n in container.notifications.list_for_user("u1")} == {"b", "c"}


def test_preferences_get_or_create_is_idempotent(container: Container) -> None:
    first = container.preferences.get_or_create("u1")
    second = container.preferences.get_or_create("u1")
    assert first.id == second.id
    first.push_enabled = True
    container.preferences.upsert(first)
    with pytest.raises(ConcurrencyConflict):
        container.preferences.upsert(second)
