"""Tests for TaskService: hierarchy, dependencies and status gating."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from workboard.config import Settings
from workboard.domain.models import Project
from workboard.errors import (
    BlockedByDependency,
    ConcurrencyConflict,
    CycleDetected,
    InvalidOperation,
    NotFound,
)
from workboard.events.ws import WebSocketHub
from workboard.services import Services, build_services


@pytest.fixture
def services(tmp_path: Path) -> Services:
    return build_services(tmp_path, settings=Settings(), hub=WebSocketHub())


@pytest.fixture
def project(services: Services) -> Project:
    project = Project(id="proj-1", name="Website", key="web", members=["alice", "bob"])
    services.container.projects.upsert(project)
    return project


class TestCreateTask:
    def test_creates_with_number_and_watcher(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "  Build login  ", created_by="alice")
        assert task.title == "Build login"
        assert task.task_number == 1
        assert task.watchers == ["alice"]
        assert services.tasks.get_task_detail(task.id)["task_key"] == "WEB-1"

    def test_unknown_project(self, services: Services) -> None:
        with pytest.raises(NotFound):
            services.tasks.create_task("missing", "x")

    def test_title_validation(self, services: Services, project: Project) -> None:
        with pytest.raises(InvalidOperation):
            services.tasks.create_task(project.id, "   ")
        with pytest.raises(InvalidOperation):
            services.tasks.create_task(project.id, "x" * 201)

    def test_invalid_priority(self, services: Services, project: Project) -> None:
        with pytest.raises(InvalidOperation):
            services.tasks.create_task(project.id, "x", priority="P0")

    def test_subtask_must_share_project(self, services: Services, project: Project) -> None:
        services.container.projects.upsert(Project(id="proj-2", name="Other", key="OTH"))
        parent = services.tasks.create_task(project.id, "parent")
        with pytest.raises(InvalidOperation):
            services.tasks.create_task("proj-2", "child", parent_task_id=parent.id)

    def test_subtask_orders_are_sequential(self, services: Services, project: Project) -> None:
        parent = services.tasks.create_task(project.id, "parent")
        first = services.tasks.create_subtask(parent.id, "one")
        second = services.tasks.create_subtask(parent.id, "two")
        assert (first.order, second.order) == (0, 1)
        assert [t.id for t in services.tasks.list_subtasks(parent.id)] == [first.id, second.id]


class TestProgressRollup:
    def test_four_subtasks_one_completed_one_closed_is_50(self, services: Services, project: Project) -> None:
        parent = services.tasks.create_task(project.id, "parent")
        subs = [services.tasks.create_subtask(parent.id, f"sub {i}") for i in range(4)]
        services.tasks.update_status(subs[0].id, "completed")
        services.tasks.update_status(subs[1].id, "closed")
        assert services.tasks.get_task(parent.id).progress == 50

    def test_closing_only_subtask_sets_parent_100_without_status_change(self, services: Services, project: Project) -> None:
        parent = services.tasks.create_task(project.id, "parent")
        sub = services.tasks.create_subtask(parent.id, "only child")
        services.tasks.update_status(sub.id, "closed")
        refreshed = services.tasks.get_task(parent.id)
        assert refreshed.progress == 100
        assert refreshed.status.value == "open"

    def test_new_subtask_lowers_parent_progress(self, services: Services, project: Project) -> None:
        parent = services.tasks.create_task(project.id, "parent")
        sub = services.tasks.create_subtask(parent.id, "a")
        services.tasks.update_status(sub.id, "completed")
        services.tasks.create_subtask(parent.id, "b")
        assert services.tasks.get_task(parent.id).progress == 50

    def test_leaf_progress_can_be_set_manually(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "leaf")
        assert services.tasks.update_task(task.id, {"progress": 40}).progress == 40
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(task.id, {"progress": 140})

    def test_parent_progress_cannot_be_set_manually(self, services: Services, project: Project) -> None:
        parent = services.tasks.create_task(project.id, "parent")
        services.tasks.create_subtask(parent.id, "a")
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(parent.id, {"progress": 10})

    def test_reparent_recomputes_both_parents(self, services: Services, project: Project) -> None:
        old = services.tasks.create_task(project.id, "old")
        new = services.tasks.create_task(project.id, "new")
        done = services.tasks.create_subtask(old.id, "done")
        services.tasks.create_subtask(old.id, "open")
        services.tasks.update_status(done.id, "completed")
        assert services.tasks.get_task(old.id).progress == 50

        services.tasks.update_task(done.id, {"parent_task_id": new.id})
        assert services.tasks.get_task(old.id).progress == 0
        assert services.tasks.get_task(new.id).progress == 100

    def test_reparent_under_own_descendant_is_rejected(self, services: Services, project: Project) -> None:
        root = services.tasks.create_task(project.id, "root")
        child = services.tasks.create_subtask(root.id, "child")
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(root.id, {"parent_task_id": child.id})
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(root.id, {"parent_task_id": root.id})


class TestDeleteTask:
    def test_deletes_whole_subtree_and_dependency_refs(self, services: Services, project: Project) -> None:
        root = services.tasks.create_task(project.id, "root")
        child = services.tasks.create_subtask(root.id, "child")
        grandchild = services.tasks.create_subtask(child.id, "grandchild")
        survivor = services.tasks.create_task(project.id, "survivor")
        services.tasks.add_dependency(survivor.id, grandchild.id)

        deleted = services.tasks.delete_task(root.id)

        assert set(deleted) == {root.id, child.id, grandchild.id}
        remaining = services.tasks.list_tasks(project.id)
        assert [t.id for t in remaining] == [survivor.id]
        assert remaining[0].dependencies == []

    def test_deleting_subtask_recomputes_parent(self, services: Services, project: Project) -> None:
        parent = services.tasks.create_task(project.id, "parent")
        done = services.tasks.create_subtask(parent.id, "done")
        pending = services.tasks.create_subtask(parent.id, "pending")
        services.tasks.update_status(done.id, "completed")
        services.tasks.delete_task(pending.id)
        assert services.tasks.get_task(parent.id).progress == 100


class TestDependencies:
    def test_cycle_is_rejected(self, services: Services, project: Project) -> None:
        t1, t2, t3 = (services.tasks.create_task(project.id, f"T{i}") for i in (1, 2, 3))
        services.tasks.add_dependency(t1.id, t2.id)
        services.tasks.add_dependency(t2.id, t3.id)
        with pytest.raises(CycleDetected):
            services.tasks.add_dependency(t3.id, t1.id)
        assert services.tasks.get_task(t3.id).dependencies == []

    def test_self_dependency_is_rejected(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "solo")
        with pytest.raises(InvalidOperation):
            services.tasks.add_dependency(task.id, task.id)

    def test_missing_target(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "solo")
        with pytest.raises(NotFound):
            services.tasks.add_dependency(task.id, "task-missing")

    def test_cross_project_is_rejected(self, services: Services, project: Project) -> None:
        services.container.projects.upsert(Project(id="proj-2", name="Other", key="OTH"))
        a = services.tasks.create_task(project.id, "a")
        b = services.tasks.create_task("proj-2", "b")
        with pytest.raises(InvalidOperation):
            services.tasks.add_dependency(a.id, b.id)

    def test_add_is_idempotent_and_remove_is_noop_when_absent(self, services: Services, project: Project) -> None:
        a = services.tasks.create_task(project.id, "a")
        b = services.tasks.create_task(project.id, "b")
        services.tasks.add_dependency(b.id, a.id)
        services.tasks.add_dependency(b.id, a.id, "start_to_start")
        assert len(services.tasks.get_task(b.id).dependencies) == 1
        services.tasks.remove_dependency(b.id, a.id)
        services.tasks.remove_dependency(b.id, a.id)
        assert services.tasks.get_task(b.id).dependencies == []

    def test_dependents_and_graph(self, services: Services, project: Project) -> None:
        a = services.tasks.create_task(project.id, "a")
        b = services.tasks.create_task(project.id, "b")
        services.tasks.add_dependency(b.id, a.id)
        assert [t.id for t in services.tasks.get_dependents(a.id)] == [b.id]
        assert services.tasks.get_dependency_graph(project.id) == {a.id: [], b.id: [a.id]}


class TestStatusGating:
    def test_blocked_until_dependency_done(self, services: Services, project: Project) -> None:
        blocker = services.tasks.create_task(project.id, "Schema")
        task = services.tasks.create_task(project.id, "API")
        services.tasks.add_dependency(task.id, blocker.id)

        with pytest.raises(BlockedByDependency) as exc_info:
            services.tasks.update_status(task.id, "in_progress")
        assert exc_info.value.blocking == [{"id": blocker.id, "title": "Schema"}]
        assert services.tasks.get_task(task.id).status.value == "open"

        assert services.tasks.can_transition(task.id, "review") == {"allowed": True, "blocking": []}
        services.tasks.update_status(blocker.id, "completed")
        assert services.tasks.update_status(task.id, "in_progress").status.value == "in_progress"

    def test_completed_at_is_stamped_and_cleared(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t")
        done = services.tasks.update_status(task.id, "completed")
        assert done.completed_at is not None
        reopened = services.tasks.update_status(task.id, "open")
        assert reopened.completed_at is None

    def test_stale_version_is_rejected(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t")
        services.tasks.update_task(task.id, {"title": "renamed"}, expected_version=task.version)
        with pytest.raises(ConcurrencyConflict):
            services.tasks.update_task(task.id, {"title": "again"}, expected_version=task.version)

    def test_unknown_fields_are_rejected(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t")
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(task.id, {"task_number": 99})


class TestConcurrentWrites:
    """Writes that read the task graph, racing across two service instances on one data directory."""

    def _race(self, calls: list) -> list[object]:
        barrier = threading.Barrier(len(calls), timeout=5)
        outcomes: list[object] = []

        def _run(call) -> None:
            barrier.wait()
            try:
                outcomes.append(call())
            except Exception as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=_run, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return outcomes

    def test_opposing_dependencies_never_persist_a_cycle(self, tmp_path: Path, services: Services, project: Project) -> None:
        other = build_services(tmp_path, settings=Settings(), hub=WebSocketHub())
        for _ in range(8):
            a = services.tasks.create_task(project.id, "a")
            b = services.tasks.create_task(project.id, "b")

            outcomes = self._race([
                lambda: services.tasks.add_dependency(a.id, b.id),
                lambda: other.tasks.add_dependency(b.id, a.id),
            ])

            assert len(outcomes) == 2
            assert sum(isinstance(o, CycleDetected) for o in outcomes) == 1
            a_deps = services.tasks.get_task(a.id).depends_on(b.id)
            b_deps = services.tasks.get_task(b.id).depends_on(a.id)
            assert a_deps != b_deps

    def test_concurrent_subtask_completion_rolls_up_to_100(self, tmp_path: Path, services: Services, project: Project) -> None:
        other = build_services(tmp_path, settings=Settings(), hub=WebSocketHub())
        parent = services.tasks.create_task(project.id, "parent")
        subtasks = [services.tasks.create_task(project.id, f"s{i}", parent_task_id=parent.id) for i in range(4)]

        outcomes = self._race([
            (lambda s=s, svc=svc: svc.tasks.update_status(s.id, "completed"))
            for s, svc in zip(subtasks, [services, other, services, other])
        ])

        assert not [o for o in outcomes if isinstance(o, Exception)]
        assert services.tasks.get_task(parent.id).progress == 100

    def test_blocked_status_aborts_the_whole_update(self, services: Services, project: Project) -> None:
        blocker = services.tasks.create_task(project.id, "blocker")
        task = services.tasks.create_task(project.id, "task")
        services.tasks.add_dependency(task.id, blocker.id)
        services.tasks.update_status(blocker.id, "completed")

        services.tasks.update_status(blocker.id, "open")
        with pytest.raises(BlockedByDependency):
            services.tasks.update_task(task.id, {"status": "in_progress", "title": "task v2"})
        stored = services.tasks.get_task(task.id)
        assert (stored.status.value, stored.title) == ("open", "task")


class TestExplicitNulls:
    def test_null_status_is_rejected_and_state_kept(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t")
        services.tasks.update_status(task.id, "completed")
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(task.id, {"status": None})
        stored = services.tasks.get_task(task.id)
        assert stored.status.value == "completed"
        assert stored.completed_at is not None

    @pytest.mark.parametrize("field", ["title", "priority", "progress", "order", "labels", "actual_hours"])
    def test_required_fields_cannot_be_nulled(self, services: Services, project: Project, field: str) -> None:
        task = services.tasks.create_task(project.id, "t")
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(task.id, {field: None})
        assert services.tasks.get_task(task.id).version == task.version

    def test_non_numeric_progress_is_rejected(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t")
        with pytest.raises(InvalidOperation):
            services.tasks.update_task(task.id, {"progress": "half"})

    def test_optional_links_and_dates_can_be_cleared(self, services: Services, project: Project) -> None:
        milestone = services.milestones.create(project.id, "M1")
        parent = services.tasks.create_task(project.id, "parent")
        task = services.tasks.create_task(
            project.id,
            "t",
            milestone_id=milestone.id,
            parent_task_id=parent.id,
            due_date="2026-05-01T00:00:00+00:00",
        )
        cleared = services.tasks.update_task(
            task.id, {"milestone_id": None, "parent_task_id": None, "due_date": None, "estimated_hours": None}
        )
        assert (cleared.milestone_id, cleared.parent_task_id, cleared.due_date) == (None, None, None)
        assert cleared.estimated_hours is None


class TestPeopleAndTime:
    def test_log_time(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t")
        services.tasks.log_time(task.id, 1.25)
        assert services.tasks.log_time(task.id, 0.75).actual_hours == 2.0
        with pytest.raises(InvalidOperation):
            services.tasks.log_time(task.id, 0)

    def test_watch_and_my_tasks(self, services: Services, project: Project) -> None:
        task = services.tasks.create_task(project.id, "t", assignee_ids=["bob"])
        services.tasks.watch(task.id, "carol")
        assert "carol" in services.tasks.get_task(task.id).watchers
        services.tasks.unwatch(task.id, "carol")
        assert "carol" not in services.tasks.get_task(task.id).watchers
        assert [t.id for t in services.tasks.my_tasks("bob")] == [task.id]
        services.tasks.update_status(task.id, "closed")
        assert services.tasks.my_tasks("bob") == []

    def test_overdue_tasks(self, services: Services, project: Project) -> None:
        late = services.tasks.create_task(project.id, "late", due_date="2020-01-01T00:00:00Z")
        services.tasks.create_task(project.id, "future", due_date="2999-01-01T00:00:00Z")
        done = services.tasks.create_task(project.id, "done", due_date="2020-01-01T00:00:00Z")
        services.tasks.update_status(done.id, "completed")
        assert [t.id for t in services.tasks.overdue_tasks(project.id)] == [late.id]

    def test_events_are_recorded(self, services: Services, project: Project) -> None:
        services.tasks.create_task(project.id, "t")
        types = [e["type"] for e in services.container.events.list_recent()]
        assert "task.created" in types
