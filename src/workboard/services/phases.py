from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..domain.models import Phase, Task, utcnow
from ..domain.progress import completion_percentage, phase_report
from ..errors import InvalidOperation, NotFound
from ..events.bus import EventBus
from ..storage.container import Container

if TYPE_CHECKING:
    from .tasks import TaskService

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"name", "description", "start_date", "end_date", "color"}


class PhaseService:
    """Group tasks of a project into ordered phases."""

    def __init__(
        self,
        container: Container,
        bus: EventBus,
        tasks: "TaskService",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.container = container
        self.phases = container.phases
        self.bus = bus
        self.task_service = tasks
        self.clock = clock

    def _emit(self, event_type: str, phase: Phase, **details: Any) -> None:
        payload = phase.to_dict()
        if details:
            payload["details"] = details
        self.bus.emit(channel="phases", event_type=event_type, entity_id=phase.id, payload=payload, project_id=phase.project_id)

    def get(self, phase_id: str) -> Phase:
        phase = self.phases.get(phase_id)
        if phase is None:
            raise NotFound("Phase", phase_id)
        return phase

    def tasks_of(self, phase_id: str) -> list[Task]:
        return [t for t in self.container.tasks.list() if t.phase_id == phase_id]

    def create(
        self,
        project_id: str,
        name: str,
        *,
        description: str = "",
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        color: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Phase:
        if self.container.projects.get(project_id) is None:
            raise NotFound("Project", project_id)
        if not (name or "").strip():
            raise InvalidOperation("Phase name is required")
        phase = Phase(
            project_id=project_id,
            name=name.strip(),
            description=description or "",
            start_date=start_date,
            end_date=end_date,
            created_by=created_by,
        )
        if color:
            phase.color = color
        phase = self.phases.create(phase)
        logger.info("Created phase %s in project %s: %s", phase.id, project_id, phase.name)
        self._emit("phase.created", phase)
        return phase

    def list(self, project_id: str) -> list[dict[str, Any]]:
        tasks = self.container.tasks.list(project_id)
        out = []
        for phase in sorted(self.phases.list(project_id), key=lambda p: p.order):
            mine = [t for t in tasks if t.phase_id == phase.id]
            data = phase.to_dict()
            data["task_count"] = len(mine)
            data["completed_task_count"] = sum(1 for t in mine if t.is_done)
            data["progress"] = completion_percentage(mine)
            out.append(data)
        return out

    def detail(self, phase_id: str) -> dict[str, Any]:
        phase = self.get(phase_id)
        tasks = sorted(self.tasks_of(phase_id), key=lambda t: (t.order, t.task_number))
        data = phase.to_dict()
        data["tasks"] = [t.to_dict() for t in tasks]
        data["progress"] = completion_percentage(tasks)
        return data

    def update(self, phase_id: str, changes: dict[str, Any]) -> Phase:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidOperation(f"Cannot update phase fields: {', '.join(sorted(unknown))}")
        if "name" in changes and not (changes["name"] or "").strip():
            raise InvalidOperation("Phase name is required")
        self.get(phase_id)

        def _apply(p: Phase) -> None:
            for key, value in changes.items():
                setattr(p, key, value)

        phase = self.phases.update(phase_id, _apply)
        self._emit("phase.updated", phase)
        return phase

    def delete(self, phase_id: str) -> int:
        """Delete the phase and unassign its tasks; returns tasks unassigned."""
        phase = self.get(phase_id)
        self.phases.delete(phase_id)
        unassigned = self.container.tasks.unset_field("phase_id", phase_id)
        logger.info("Deleted phase %s, unassigned %d tasks", phase_id, unassigned)
        self._emit("phase.deleted", phase)
        return unassigned

    def reorder(self, project_id: str, phase_ids: list[str]) -> list[dict[str, Any]]:
        for position, phase_id in enumerate(phase_ids):
            existing = self.phases.get(phase_id)
            if existing is None or existing.project_id != project_id:
                continue

            def _order(p: Phase, position: int = position) -> None:
                p.order = position

            self.phases.update(phase_id, _order)
        return self.list(project_id)

    def progress(self, phase_id: str) -> dict[str, Any]:
        phase = self.get(phase_id)
        report = phase_report(self.tasks_of(phase_id), phase.start_date, phase.end_date, self.clock())
        report["phase_id"] = phase.id
        return report

    def duplicate(
        self,
        phase_id: str,
        *,
        name: Optional[str] = None,
        include_tasks: bool = True,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        """Copy a phase, optionally with its top-level tasks and their subtrees."""
        source = self.get(phase_id)
        copy = self.create(
            source.project_id,
            name or f"{source.name} (Copy)",
            description=source.description,
            start_date=source.start_date,
            end_date=source.end_date,
            color=source.color,
            created_by=created_by,
        )
        copied: list[Task] = []
        if include_tasks:
            roots = [t for t in self.tasks_of(phase_id) if not t.parent_task_id]
            roots.sort(key=lambda t: (t.order, t.task_number))
            copied = self.task_service.duplicate_trees(roots, {"phase_id": copy.id}, created_by=created_by)
        self._emit("phase.duplicated", copy, source_id=source.id, task_count=len(copied))
        return {"phase": copy.to_dict(), "tasks": [t.to_dict() for t in copied]}
