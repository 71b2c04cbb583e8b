from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from ..domain.models import (
    Milestone,
    Notification,
    NotificationPreference,
    Phase,
    Project,
    Task,
    User,
)


class TaskRepository(ABC):
    @abstractmethod
    def list(self, project_id: Optional[str] = None) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Optional[Task]:
        raise NotImplementedError

    @abstractmethod
    def create(self, task: Task) -> Task:
        """Insert *task*, assigning the next per-project ``task_number``."""
        raise NotImplementedError

    @abstractmethod
    def upsert(self, task: Task) -> Task:
        raise NotImplementedError

    @abstractmethod
    def update(self, task_id: str, mutator: Callable[[Task], None]) -> Task:
        raise NotImplementedError

    @abstractmethod
    def update_with_snapshot(self, task_id: str, mutator: Callable[[Task, list[Task]], Optional[bool]]) -> Task:
        """Apply *mutator* to *task_id* while every task is held under one lock.

        The mutator receives the task and the full task list loaded inside
        that lock, so graph checks and the write see the same state.  It may
        raise to abort, or return ``False`` to leave storage untouched.
        """
        raise NotImplementedError

    @abstractmethod
    def push_unique(self, task_id: str, field_name: str, value: Any) -> Task:
        raise NotImplementedError

    @abstractmethod
    def pull(self, task_id: str, field_name: str, value: Any) -> Task:
        raise NotImplementedError

    @abstractmethod
    def increment(self, task_id: str, field_name: str, delta: float) -> Task:
        raise NotImplementedError

    @abstractmethod
    def delete_many(self, task_ids: set[str]) -> int:
        raise NotImplementedError

    @abstractmethod
    def pull_dependency_refs(self, removed_ids: set[str]) -> int:
        raise NotImplementedError

    @abstractmethod
    def unset_field(self, field_name: str, value: str) -> int:
        """Clear *field_name* on every task where it equals *value*."""
        raise NotImplementedError


class MilestoneRepository(ABC):
    @abstractmethod
    def list(self, project_id: Optional[str] = None) -> list[Milestone]:
        raise NotImplementedError

    @abstractmethod
    def get(self, milestone_id: str) -> Optional[Milestone]:
        raise NotImplementedError

    @abstractmethod
    def create(self, milestone: Milestone) -> Milestone:
        """Insert *milestone* at the next free ``order`` slot of its project."""
        raise NotImplementedError

    @abstractmethod
    def upsert(self, milestone: Milestone) -> Milestone:
        raise NotImplementedError

    @abstractmethod
    def update(self, milestone_id: str, mutator: Callable[[Milestone], None]) -> Milestone:
        raise NotImplementedError

    @abstractmethod
    def delete(self, milestone_id: str) -> bool:
        raise NotImplementedError


class PhaseRepository(ABC):
    @abstractmethod
    def list(self, project_id: Optional[str] = None) -> list[Phase]:
        raise NotImplementedError

    @abstractmethod
    def get(self, phase_id: str) -> Optional[Phase]:
        raise NotImplementedError

    @abstractmethod
    def create(self, phase: Phase) -> Phase:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, phase: Phase) -> Phase:
        raise NotImplementedError

    @abstractmethod
    def update(self, phase_id: str, mutator: Callable[[Phase], None]) -> Phase:
        raise NotImplementedError

    @abstractmethod
    def delete(self, phase_id: str) -> bool:
        raise NotImplementedError


class NotificationRepository(ABC):
    @abstractmethod
    def create(self, notification: Notification) -> Notification:
        raise NotImplementedError

    @abstractmethod
    def get(self, notification_id: str) -> Optional[Notification]:
        raise NotImplementedError

    @abstractmethod
    def list_for_user(self, user_id: str) -> list[Notification]:
        """Unexpired notifications for *user_id*, newest first."""
        raise NotImplementedError

    @abstractmethod
    def update(self, notification_id: str, mutator: Callable[[Notification], None]) -> Notification:
        raise NotImplementedError

    @abstractmethod
    def mark_all_read(self, user_id: str, read_at: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def delete(self, notification_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete_read_before(self, cutoff_iso: str) -> int:
        raise NotImplementedError


class NotificationPreferenceRepository(ABC):
    @abstractmethod
    def get_by_user(self, user_id: str) -> Optional[NotificationPreference]:
        raise NotImplementedError

    @abstractmethod
    def get_or_create(self, user_id: str) -> NotificationPreference:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, pref: NotificationPreference) -> NotificationPreference:
        raise NotImplementedError


class ProjectRepository(ABC):
    @abstractmethod
    def list(self) -> list[Project]:
        raise NotImplementedError

    @abstractmethod
    def get(self, project_id: str) -> Optional[Project]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, project: Project) -> Project:
        raise NotImplementedError


class UserRepository(ABC):
    @abstractmethod
    def list(self) -> list[User]:
        raise NotImplementedError

    @abstractmethod
    def get(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, user: User) -> User:
        raise NotImplementedError


class EventRepository(ABC):
    @abstractmethod
    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: Optional[str]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        raise NotImplementedError
