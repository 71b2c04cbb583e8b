"""Task service: CRUD, hierarchy, dependency management and status changes.

This is the primary entry-point for task manipulation.  Decisions come from
the pure helpers in :mod:`workboard.domain`; this module loads records,
applies those decisions through the repositories and then triggers progress
roll-up, milestone re-evaluation and notification fan-out.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable, Optional

from ..constants import TASK_TITLE_MAX, DependencyType, TaskPriority, TaskStatus
from ..domain.dependencies import dependency_graph, dependents_of, find_blockers, would_create_cycle
from ..domain.hierarchy import collect_descendants, plan_duplicate, rollup_progress, sort_siblings
from ..domain.models import Project, Task, TaskDependency, utcnow
from ..errors import BlockedByDependency, ConcurrencyConflict, CycleDetected, InvalidOperation, NotFound
from ..events.bus import EventBus
from ..storage.container import Container

if TYPE_CHECKING:
    from .milestones import MilestoneService
    from .notifications import NotificationService

logger = logging.getLogger(__name__)


_UPDATABLE_FIELDS = {
    "title",
    "description",
    "priority",
    "status",
    "milestone_id",
    "phase_id",
    "parent_task_id",
    "due_date",
    "start_date",
    "estimated_hours",
    "actual_hours",
    "progress",
    "labels",
    "order",
}

# Fields that may be cleared with an explicit ``None``.
_NULLABLE_FIELDS = {"milestone_id", "phase_id", "parent_task_id", "due_date", "start_date", "estimated_hours"}


def _coerce_enum(enum_cls: Any, value: Any, field_name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(e.value for e in enum_cls)
        raise InvalidOperation(f"Invalid {field_name} '{value}'. Valid values: {valid}") from None


def _check_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise InvalidOperation("Task title is required")
    if len(title) > TASK_TITLE_MAX:
        raise InvalidOperation(f"Task title cannot exceed {TASK_TITLE_MAX} characters")
    return title


def _check_progress(value: Any) -> int:
    try:
        progress = int(value)
    except (TypeError, ValueError):
        raise InvalidOperation(f"Progress must be a whole number, got '{value}'") from None
    if progress < 0 or progress > 100:
        raise InvalidOperation("Progress must be between 0 and 100")
    return progress


class TaskService:
    """Manage the lifecycle of tasks inside projects.

    Parameters
    ----------
    container:
        Repository container for the data directory.
    bus:
        Event bus used to broadcast task changes.
    notifications:
        Optional notification router; when ``None`` no one is notified.
    milestones:
        Optional milestone service whose status is re-derived after task
        status changes.
    """

    def __init__(
        self,
        container: Container,
        bus: EventBus,
        notifications: Optional["NotificationService"] = None,
        milestones: Optional["MilestoneService"] = None,
    ) -> None:
        self.container = container
        self.tasks = container.tasks
        self.bus = bus
        self.notifications = notifications
        self.milestones = milestones

    def _emit(self, event_type: str, task: Task, **details: Any) -> None:
        payload = task.to_dict()
        if details:
            payload["details"] = details
        self.bus.emit(channel="tasks", event_type=event_type, entity_id=task.id, payload=payload, project_id=task.project_id)

    def _project(self, project_id: str) -> Project:
        project = self.container.projects.get(project_id)
        if project is None:
            raise NotFound("Project", project_id)
        return project

    def _index(self, project_id: Optional[str] = None) -> dict[str, Task]:
        return {t.id: t for t in self.tasks.list(project_id)}

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_task(
        self,
        project_id: str,
        title: str,
        *,
        created_by: Optional[str] = None,
        description: str = "",
        priority: str = TaskPriority.MEDIUM.value,
        status: str = TaskStatus.OPEN.value,
        assignee_ids: Optional[list[str]] = None,
        milestone_id: Optional[str] = None,
        phase_id: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        due_date: Optional[str] = None,
        start_date: Optional[str] = None,
        estimated_hours: Optional[float] = None,
        labels: Optional[list[str]] = None,
    ) -> Task:
        """Create and persist a new task, returning it."""
        project = self._project(project_id)
        order = 0
        if parent_task_id:
            parent = self.get_task(parent_task_id)
            if parent.project_id != project_id:
                raise InvalidOperation("Parent task belongs to a different project")
            siblings = [t for t in self.tasks.list(project_id) if t.parent_task_id == parent_task_id]
            order = max((t.order for t in siblings), default=-1) + 1
        if milestone_id and self.container.milestones.get(milestone_id) is None:
            raise NotFound("Milestone", milestone_id)
        if phase_id and self.container.phases.get(phase_id) is None:
            raise NotFound("Phase", phase_id)

        task = Task(
            title=_check_title(title),
            description=description or "",
            project_id=project_id,
            milestone_id=milestone_id,
            phase_id=phase_id,
            parent_task_id=parent_task_id,
            priority=_coerce_enum(TaskPriority, priority or TaskPriority.MEDIUM.value, "priority"),
            assignee_ids=list(dict.fromkeys(assignee_ids or [])),
            watchers=[created_by] if created_by else [],
            created_by=created_by,
            order=order,
            due_date=due_date,
            start_date=start_date,
            estimated_hours=estimated_hours,
            labels=list(labels or []),
        )
        task.set_status(_coerce_enum(TaskStatus, status or TaskStatus.OPEN.value, "status"))
        task = self.tasks.create(task)
        logger.info("Created task %s (%s): %s", task.id, task.task_key(project.key), task.title)

        if parent_task_id:
            self.recompute_progress(parent_task_id)
        self._refresh_milestones(task.milestone_id)
        self._emit("task.created", task)
        if self.notifications and task.assignee_ids:
            self.notifications.notify_task_assignment(task, task.assignee_ids, created_by, project)
        return task

    def create_subtask(self, parent_task_id: str, title: str, **fields: Any) -> Task:
        parent = self.get_task(parent_task_id)
        return self.create_task(parent.project_id, title, parent_task_id=parent.id, **fields)

    def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise NotFound("Task", task_id)
        return task

    def get_task_detail(self, task_id: str) -> dict[str, Any]:
        """Task plus derived fields, subtasks, dependency targets and dependents."""
        task = self.get_task(task_id)
        index = self._index(task.project_id)
        project = self.container.projects.get(task.project_id)
        deps = []
        for dep in task.dependencies:
            target = index.get(dep.depends_on_task_id)
            if target is not None:
                deps.append({"id": target.id, "title": target.title, "status": target.status.value, "type": dep.type.value})
        return {
            "task": task.to_dict(),
            "task_key": task.task_key(project.key) if project else None,
            "is_overdue": task.is_overdue(),
            "subtasks": [t.to_dict() for t in self.list_subtasks(task.id)],
            "dependencies": deps,
            "dependents": [{"id": t.id, "title": t.title} for t in dependents_of(task.id, index.values())],
        }

    def list_tasks(
        self,
        project_id: Optional[str] = None,
        *,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        assignee_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        phase_id: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        top_level_only: bool = False,
        search: Optional[str] = None,
    ) -> list[Task]:
        tasks = self.tasks.list(project_id)
        if status:
            tasks = [t for t in tasks if t.status.value == status]
        if priority:
            tasks = [t for t in tasks if t.priority.value == priority]
        if assignee_id:
            tasks = [t for t in tasks if assignee_id in t.assignee_ids]
        if milestone_id:
            tasks = [t for t in tasks if t.milestone_id == milestone_id]
        if phase_id:
            tasks = [t for t in tasks if t.phase_id == phase_id]
        if parent_task_id:
            tasks = [t for t in tasks if t.parent_task_id == parent_task_id]
        if top_level_only:
            tasks = [t for t in tasks if not t.parent_task_id]
        if search:
            needle = search.lower()
            tasks = [t for t in tasks if needle in t.title.lower() or needle in t.description.lower()]
        return sorted(tasks, key=lambda t: (t.project_id, t.task_number))

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Task:
        """Apply partial updates to a task and return the updated record.

        A ``status`` change goes through the same dependency gate as
        :meth:`update_status`.  A ``parent_task_id`` change re-parents the
        task and recomputes both the old and the new parent.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidOperation(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        nulls = sorted(k for k, v in changes.items() if v is None and k not in _NULLABLE_FIELDS)
        if nulls:
            raise InvalidOperation(f"Task fields cannot be null: {', '.join(nulls)}")
        current = self.get_task(task_id)
        if expected_version is not None and expected_version != current.version:
            raise ConcurrencyConflict("Task", task_id, expected_version, current.version)

        fields = dict(changes)
        if "title" in fields:
            fields["title"] = _check_title(fields["title"])
        if "priority" in fields:
            fields["priority"] = _coerce_enum(TaskPriority, fields["priority"], "priority")
        new_status = None
        if "status" in fields:
            new_status = _coerce_enum(TaskStatus, fields.pop("status"), "status")
        if "progress" in fields:
            fields["progress"] = _check_progress(fields["progress"])
        old_parent = current.parent_task_id
        new_parent = fields.get("parent_task_id", old_parent)
        if new_parent != old_parent:
            self._check_reparent(current, new_parent)
        if fields.get("milestone_id") and self.container.milestones.get(fields["milestone_id"]) is None:
            raise NotFound("Milestone", fields["milestone_id"])
        if fields.get("phase_id") and self.container.phases.get(fields["phase_id"]) is None:
            raise NotFound("Phase", fields["phase_id"])

        status_changed: list[bool] = []

        def _apply(task: Task, snapshot: list[Task]) -> None:
            if expected_version is not None and task.version != expected_version:
                raise ConcurrencyConflict("Task", task.id, expected_version, task.version)
            index = {t.id: t for t in snapshot}
            if new_status is not None and new_status != task.status:
                self.check_transition(task, new_status, index)
                status_changed.append(True)
            if "progress" in fields and any(t.parent_task_id == task.id for t in snapshot):
                raise InvalidOperation("Progress is derived from subtasks and cannot be set directly")
            if new_parent and new_parent != task.parent_task_id:
                if new_parent not in index:
                    raise NotFound("Task", new_parent)
                if new_parent in {t.id for t in collect_descendants(task.id, snapshot)}:
                    raise InvalidOperation("A task cannot be moved under one of its own subtasks")
            for key, value in fields.items():
                setattr(task, key, value)
            if status_changed:
                task.set_status(new_status)

        task = self.tasks.update_with_snapshot(task_id, _apply)
        if not status_changed:
            new_status = None
        logger.info("Updated task %s: %s", task.id, ", ".join(sorted(changes)))

        if task.parent_task_id != old_parent:
            if old_parent:
                self.recompute_progress(old_parent)
        if task.parent_task_id and (new_status is not None or task.parent_task_id != old_parent):
            self.recompute_progress(task.parent_task_id)
        if new_status is not None or current.milestone_id != task.milestone_id:
            self._refresh_milestones(current.milestone_id, task.milestone_id)
        self._emit("task.updated", task, changes=sorted(changes))
        if self.notifications:
            summary = {k: (v.value if hasattr(v, "value") else v) for k, v in changes.items()}
            self.notifications.notify_task_update(task, actor_id, summary)
        return task

    def delete_task(self, task_id: str, actor_id: Optional[str] = None) -> list[str]:
        """Delete a task and its whole subtree.

        Every reference to a deleted task is stripped from the dependency
        lists of the tasks that remain.  Returns the deleted ids.
        """
        task = self.get_task(task_id)
        subtree = [task] + collect_descendants(task.id, self.tasks.list(task.project_id))
        doomed = [t.id for t in subtree]
        removed = set(doomed)
        self.tasks.delete_many(removed)
        self.tasks.pull_dependency_refs(removed)
        logger.info("Deleted task %s with %d subtasks (actor=%s)", task.id, len(doomed) - 1, actor_id)

        if task.parent_task_id:
            self.recompute_progress(task.parent_task_id)
        self._refresh_milestones(*(t.milestone_id for t in subtree))
        self._emit("task.deleted", task, deleted_ids=doomed)
        return doomed

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def _children(self, task_id: str) -> list[Task]:
        return [t for t in self.tasks.list() if t.parent_task_id == task_id]

    def list_subtasks(self, task_id: str) -> list[Task]:
        return sort_siblings(self._children(task_id))

    def _check_reparent(self, task: Task, new_parent_id: Optional[str]) -> None:
        if new_parent_id is None:
            return
        if new_parent_id == task.id:
            raise InvalidOperation("A task cannot be its own parent")
        parent = self.get_task(new_parent_id)
        if parent.project_id != task.project_id:
            raise InvalidOperation("Parent task belongs to a different project")

    def recompute_progress(self, task_id: str) -> Task:
        """Re-derive *task_id*'s progress from its direct subtasks.

        A task without subtasks keeps its manually-set progress.
        """
        changed: list[int] = []

        def _rollup(t: Task, snapshot: list[Task]) -> Optional[bool]:
            progress = rollup_progress(s for s in snapshot if s.parent_task_id == t.id)
            if progress is None or progress == t.progress:
                return False
            t.progress = progress
            changed.append(progress)
            return None

        task = self.tasks.update_with_snapshot(task_id, _rollup)
        if not changed:
            return task
        progress = changed[0]
        logger.debug("Progress of task %s recomputed to %d", task_id, progress)
        self._emit("task.progress", task, progress=progress)
        return task

    def reorder_subtasks(self, parent_task_id: str, subtask_ids: list[str]) -> list[Task]:
        self.get_task(parent_task_id)
        children = {t.id for t in self._children(parent_task_id)}
        for position, subtask_id in enumerate(subtask_ids):
            if subtask_id not in children:
                continue

            def _order(t: Task, position: int = position) -> None:
                t.order = position

            self.tasks.update(subtask_id, _order)
        return self.list_subtasks(parent_task_id)

    def duplicate_trees(self, roots: Iterable[Task], overrides: dict[str, Any], created_by: Optional[str] = None) -> list[Task]:
        """Copy each root with its full subtree, applying *overrides* to every copy.

        Copies start ``open`` with zero progress and no dependencies.
        """
        root_list = list(roots)
        if not root_list:
            return []
        all_tasks = self.tasks.list(root_list[0].project_id)

        def _copy(source: Task, new_parent_id: Optional[str]) -> Task:
            copy = Task(
                title=source.title,
                description=source.description,
                project_id=source.project_id,
                milestone_id=source.milestone_id,
                phase_id=source.phase_id,
                parent_task_id=new_parent_id if new_parent_id is not None else source.parent_task_id,
                priority=source.priority,
                assignee_ids=list(source.assignee_ids),
                watchers=[created_by] if created_by else list(source.watchers),
                created_by=created_by or source.created_by,
                order=source.order,
                due_date=source.due_date,
                start_date=source.start_date,
                estimated_hours=source.estimated_hours,
                labels=list(source.labels),
            )
            for key, value in overrides.items():
                setattr(copy, key, value)
            return copy

        created = []
        for copy in plan_duplicate(root_list, all_tasks, _copy):
            created.append(self.tasks.create(copy))
        logger.info("Duplicated %d tasks from %d roots", len(created), len(root_list))
        return created

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def blockers(
        self, task: Task, new_status: TaskStatus, index: Optional[dict[str, Task]] = None
    ) -> list[dict[str, str]]:
        return find_blockers(task, new_status, self._index(task.project_id) if index is None else index)

    def check_transition(self, task: Task, new_status: TaskStatus, index: Optional[dict[str, Task]] = None) -> None:
        blocking = self.blockers(task, new_status, index)
        if blocking:
            logger.info("Task %s blocked from %s by %s", task.id, new_status.value, [b["id"] for b in blocking])
            raise BlockedByDependency(blocking)

    def can_transition(self, task_id: str, new_status: str) -> dict[str, Any]:
        task = self.get_task(task_id)
        blocking = self.blockers(task, _coerce_enum(TaskStatus, new_status, "status"))
        return {"allowed": not blocking, "blocking": blocking}

    def update_status(self, task_id: str, new_status: str, actor_id: Optional[str] = None) -> Task:
        return self.update_task(task_id, {"status": new_status}, actor_id=actor_id)

    def _refresh_milestones(self, *milestone_ids: Optional[str]) -> None:
        if self.milestones is None:
            return
        for milestone_id in dict.fromkeys(m for m in milestone_ids if m):
            if self.container.milestones.get(milestone_id) is not None:
                self.milestones.refresh_status(milestone_id)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_id: str, dependency_type: str = DependencyType.FINISH_TO_START.value) -> Task:
        if task_id == depends_on_id:
            raise InvalidOperation("A task cannot depend on itself")
        task = self.get_task(task_id)
        target = self.get_task(depends_on_id)
        if target.project_id != task.project_id:
            raise InvalidOperation("Dependencies must stay within one project")
        dep_type = _coerce_enum(DependencyType, dependency_type or DependencyType.FINISH_TO_START.value, "dependency type")
        linked: list[bool] = []

        # Cycle walk and write run against one locked snapshot.
        def _link(t: Task, snapshot: list[Task]) -> Optional[bool]:
            if t.depends_on(target.id):
                return False
            index = {s.id: s for s in snapshot}
            if target.id not in index:
                raise NotFound("Task", target.id)
            if would_create_cycle(t.id, target.id, index):
                logger.info("Rejected dependency %s -> %s: cycle", t.id, target.id)
                raise CycleDetected(t.id, target.id)
            t.dependencies.append(TaskDependency(target.id, dep_type))
            linked.append(True)
            return None

        task = self.tasks.update_with_snapshot(task.id, _link)
        if linked:
            self._emit("task.dependency_added", task, depends_on=target.id, type=dep_type.value)
        return task

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Task:
        task = self.get_task(task_id)
        if not task.depends_on(depends_on_id):
            return task
        task = self.tasks.pull(task_id, "dependencies", depends_on_id)
        self._emit("task.dependency_removed", task, depends_on=depends_on_id)
        return task

    def get_dependents(self, task_id: str) -> list[Task]:
        task = self.get_task(task_id)
        return dependents_of(task.id, self.tasks.list())

    def get_dependency_graph(self, project_id: str) -> dict[str, list[str]]:
        return dependency_graph(self.tasks.list(project_id))

    # ------------------------------------------------------------------
    # Assignment, watchers and time
    # ------------------------------------------------------------------

    def assign_task(self, task_id: str, assignee_ids: list[str], actor_id: Optional[str] = None) -> Task:
        """Replace the assignee list; only newly added assignees are notified."""
        previous = set(self.get_task(task_id).assignee_ids)
        wanted = list(dict.fromkeys(assignee_ids))

        def _assign(t: Task) -> None:
            t.assignee_ids = wanted

        task = self.tasks.update(task_id, _assign)
        added = [user_id for user_id in wanted if user_id not in previous]
        self._emit("task.assigned", task, added=added)
        if self.notifications and added:
            self.notifications.notify_task_assignment(task, added, actor_id, self.container.projects.get(task.project_id))
        return task

    def watch(self, task_id: str, user_id: str) -> Task:
        self.get_task(task_id)
        return self.tasks.push_unique(task_id, "watchers", user_id)

    def unwatch(self, task_id: str, user_id: str) -> Task:
        self.get_task(task_id)
        return self.tasks.pull(task_id, "watchers", user_id)

    def log_time(self, task_id: str, hours: float) -> Task:
        if hours <= 0:
            raise InvalidOperation("Logged hours must be positive")
        self.get_task(task_id)
        return self.tasks.increment(task_id, "actual_hours", float(hours))

    def add_comment(self, task_id: str, author_id: str, content: str, mentions: Optional[list[str]] = None) -> dict[str, Any]:
        """Broadcast a comment on a task and notify its audience.

        Comment bodies are not stored here; the event carries the content.
        """
        task = self.get_task(task_id)
        if not (content or "").strip():
            raise InvalidOperation("Comment content is required")
        event = self.bus.emit(
            channel="tasks",
            event_type="task.comment",
            entity_id=task.id,
            payload={"author_id": author_id, "content": content, "mentions": list(mentions or [])},
            project_id=task.project_id,
        )
        if self.notifications:
            self.notifications.notify_comment(task, author_id, event["id"], content, mentions or [])
        return event

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def overdue_tasks(self, project_id: Optional[str] = None) -> list[Task]:
        now = utcnow()
        tasks = [t for t in self.tasks.list(project_id) if t.is_overdue(now)]
        return sorted(tasks, key=lambda t: t.due_date or "")

    def my_tasks(self, user_id: str, include_done: bool = False) -> list[Task]:
        tasks = [t for t in self.tasks.list() if user_id in t.assignee_ids]
        if not include_done:
            tasks = [t for t in tasks if not t.is_done]
        return sorted(tasks, key=lambda t: (t.due_date is None, t.due_date or "", t.task_number))
