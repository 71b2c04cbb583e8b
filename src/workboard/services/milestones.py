"""Milestone service.

Milestone progress is a read-time view over the milestone's tasks; it is
never persisted.  ``status`` is derived from that progress, the due date and
the clock.  It cannot be set directly: every read re-derives it, and a stale
stored value is rewritten on the spot, so an overdue milestone reports
``overdue`` as soon as its due date passes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..constants import MilestoneStatus
from ..domain.models import Milestone, Task, parse_iso, utcnow
from ..domain.progress import completion_percentage, derive_milestone_status
from ..errors import InvalidOperation, NotFound
from ..events.bus import EventBus
from ..storage.container import Container

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"name", "description", "due_date", "start_date", "color", "owner"}


class MilestoneService:
    def __init__(self, container: Container, bus: EventBus, clock: Callable[[], datetime] = utcnow) -> None:
        self.container = container
        self.milestones = container.milestones
        self.bus = bus
        self.clock = clock

    def _emit(self, event_type: str, milestone: Milestone) -> None:
        self.bus.emit(
            channel="milestones",
            event_type=event_type,
            entity_id=milestone.id,
            payload=milestone.to_dict(),
            project_id=milestone.project_id,
        )

    def get(self, milestone_id: str) -> Milestone:
        milestone = self.milestones.get(milestone_id)
        if milestone is None:
            raise NotFound("Milestone", milestone_id)
        return milestone

    def tasks_of(self, milestone_id: str) -> list[Task]:
        return [t for t in self.container.tasks.list() if t.milestone_id == milestone_id]

    def progress(self, milestone_id: str) -> int:
        return completion_percentage(self.tasks_of(milestone_id))

    def _sync(self, milestone: Milestone, progress: int) -> Milestone:
        status, completed_at = derive_milestone_status(
            progress, milestone.due_date, self.clock(), milestone.completed_at
        )
        if status == milestone.status and completed_at == milestone.completed_at:
            return milestone

        def _set(m: Milestone) -> None:
            m.status = status
            m.completed_at = completed_at

        milestone = self.milestones.update(milestone.id, _set)
        logger.info("Milestone %s is now %s", milestone.id, status.value)
        self._emit("milestone.status", milestone)
        return milestone

    def view(self, milestone: Milestone, include_tasks: bool = False) -> dict[str, Any]:
        tasks = self.tasks_of(milestone.id)
        progress = completion_percentage(tasks)
        milestone = self._sync(milestone, progress)
        data = milestone.to_dict()
        data["progress"] = progress
        data["task_count"] = len(tasks)
        data["completed_task_count"] = sum(1 for t in tasks if t.is_done)
        if include_tasks:
            data["tasks"] = [t.to_dict() for t in sorted(tasks, key=lambda t: t.task_number)]
        return data

    def create(
        self,
        project_id: str,
        name: str,
        *,
        due_date: Optional[str] = None,
        description: str = "",
        start_date: Optional[str] = None,
        color: Optional[str] = None,
        owner: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Milestone:
        if self.container.projects.get(project_id) is None:
            raise NotFound("Project", project_id)
        if not (name or "").strip():
            raise InvalidOperation("Milestone name is required")
        if due_date is not None and parse_iso(due_date) is None:
            raise InvalidOperation(f"Invalid due date: {due_date}")
        milestone = Milestone(
            project_id=project_id,
            name=name.strip(),
            description=description or "",
            due_date=due_date,
            start_date=start_date,
            owner=owner,
            created_by=created_by,
        )
        if color:
            milestone.color = color
        status, completed_at = derive_milestone_status(0, due_date, self.clock(), None)
        milestone.status = status
        milestone.completed_at = completed_at
        milestone = self.milestones.create(milestone)
        logger.info("Created milestone %s in project %s: %s", milestone.id, project_id, milestone.name)
        self._emit("milestone.created", milestone)
        return milestone

    def list(self, project_id: str) -> list[dict[str, Any]]:
        items = sorted(self.milestones.list(project_id), key=lambda m: (m.order, m.due_date or ""))
        return [self.view(m) for m in items]

    def update(self, milestone_id: str, changes: dict[str, Any], expected_version: Optional[int] = None) -> Milestone:
        if "status" in changes:
            raise InvalidOperation("Milestone status is derived from its tasks and due date and cannot be set")
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidOperation(f"Cannot update milestone fields: {', '.join(sorted(unknown))}")
        fields = dict(changes)
        if "name" in fields and not (fields["name"] or "").strip():
            raise InvalidOperation("Milestone name is required")
        if fields.get("due_date") is not None and parse_iso(fields["due_date"]) is None:
            raise InvalidOperation(f"Invalid due date: {fields['due_date']}")

        milestone = self.get(milestone_id)
        for key, value in fields.items():
            setattr(milestone, key, value)
        if expected_version is not None:
            milestone.version = expected_version
        milestone = self.milestones.upsert(milestone)
        self._emit("milestone.updated", milestone)
        # A moved due date can flip pending and overdue.
        return self._sync(milestone, self.progress(milestone.id))

    def refresh_status(self, milestone_id: str) -> Milestone:
        """Re-derive and persist the milestone status from its current tasks."""
        return self._sync(self.get(milestone_id), self.progress(milestone_id))

    def delete(self, milestone_id: str) -> int:
        """Delete the milestone and detach its tasks; returns tasks detached."""
        milestone = self.get(milestone_id)
        self.milestones.delete(milestone_id)
        detached = self.container.tasks.unset_field("milestone_id", milestone_id)
        logger.info("Deleted milestone %s, detached %d tasks", milestone_id, detached)
        self._emit("milestone.deleted", milestone)
        return detached

    def reorder(self, project_id: str, orders: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for item in orders:
            milestone_id = str(item.get("id") or "")
            existing = self.milestones.get(milestone_id)
            if existing is None or existing.project_id != project_id:
                continue

            def _order(m: Milestone, order: int = int(item.get("order") or 0)) -> None:
                m.order = order

            self.milestones.update(milestone_id, _order)
        return self.list(project_id)

    def upcoming(self, project_id: Optional[str] = None, days: int = 7) -> list[dict[str, Any]]:
        now = self.clock()
        horizon = now + timedelta(days=days)
        out = []
        for milestone in self.milestones.list(project_id):
            due = parse_iso(milestone.due_date)
            if due is None or due > horizon:
                continue
            data = self.view(milestone)
            if data["status"] != MilestoneStatus.COMPLETED.value:
                out.append(data)
        return sorted(out, key=lambda m: m["due_date"] or "")
