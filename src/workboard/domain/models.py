"""Domain records for projects, tasks, milestones, phases and notifications.

Every record is a plain dataclass that serializes to a YAML/JSON-friendly
dict via ``to_dict`` and back via ``from_dict``.  Timestamps are ISO-8601
strings in UTC.  Records that are edited concurrently carry a ``version``
counter that the repositories use for optimistic concurrency checks.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, TypeVar

from ..constants import (
    DONE_STATUSES,
    NOTIFICATION_TTL_DAYS,
    DependencyType,
    MilestoneStatus,
    NotificationType,
    TaskPriority,
    TaskStatus,
    UserRole,
)


E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


def parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    # Naive timestamps are treated as UTC.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _enum(enum_cls: type[E], raw: Any, default: E) -> E:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except ValueError:
        return default


def _plain(data: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        out[key] = value.value if isinstance(value, Enum) else value
    return out


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


# ---------------------------------------------------------------------------
# Collaborator-owned records
# ---------------------------------------------------------------------------

@dataclass
class User:
    id: str = field(default_factory=lambda: _id("user"))
    email: str = ""
    full_name: str = ""
    role: UserRole = UserRole.TEAM_MEMBER
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=str(data.get("id") or _id("user")),
            email=str(data.get("email") or ""),
            full_name=str(data.get("full_name") or ""),
            role=_enum(UserRole, data.get("role"), UserRole.TEAM_MEMBER),
            created_at=str(data.get("created_at") or now_iso()),
        )


@dataclass
class Project:
    id: str = field(default_factory=lambda: _id("proj"))
    name: str = ""
    key: str = ""
    members: list[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id") or _id("proj")),
            name=str(data.get("name") or ""),
            key=str(data.get("key") or "").upper(),
            members=[str(m) for m in list(data.get("members") or [])],
            created_by=data.get("created_by"),
            created_at=str(data.get("created_at") or now_iso()),
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass
class TaskDependency:
    depends_on_task_id: str
    type: DependencyType = DependencyType.FINISH_TO_START

    def to_dict(self) -> dict[str, Any]:
        return {"depends_on_task_id": self.depends_on_task_id, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskDependency":
        return cls(
            depends_on_task_id=str(data.get("depends_on_task_id") or ""),
            type=_enum(DependencyType, data.get("type"), DependencyType.FINISH_TO_START),
        )


@dataclass
class Task:
    """A unit of work inside a project.

    ``progress`` is a two-mode field: while the task has subtasks it is
    derived from them, otherwise it keeps whatever value was last set.
    """

    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    description: str = ""
    task_number: int = 0
    project_id: str = ""
    milestone_id: Optional[str] = None
    phase_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    status: TaskStatus = TaskStatus.OPEN
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[TaskDependency] = field(default_factory=list)
    assignee_ids: list[str] = field(default_factory=list)
    watchers: list[str] = field(default_factory=list)
    created_by: Optional[str] = None
    progress: int = 0
    order: int = 0
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    completed_at: Optional[str] = None
    estimated_hours: Optional[float] = None
    actual_hours: float = 0.0
    labels: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = _plain(asdict(self))
        data["dependencies"] = [dep.to_dict() for dep in self.dependencies]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        deps = [TaskDependency.from_dict(d) for d in list(data.get("dependencies") or []) if isinstance(d, dict)]
        return cls(
            id=str(data.get("id") or _id("task")),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            task_number=int(data.get("task_number") or 0),
            project_id=str(data.get("project_id") or ""),
            milestone_id=data.get("milestone_id"),
            phase_id=data.get("phase_id"),
            parent_task_id=data.get("parent_task_id"),
            status=_enum(TaskStatus, data.get("status"), TaskStatus.OPEN),
            priority=_enum(TaskPriority, data.get("priority"), TaskPriority.MEDIUM),
            dependencies=deps,
            assignee_ids=[str(v) for v in list(data.get("assignee_ids") or [])],
            watchers=[str(v) for v in list(data.get("watchers") or [])],
            created_by=data.get("created_by"),
            progress=int(data.get("progress") or 0),
            order=int(data.get("order") or 0),
            due_date=data.get("due_date"),
            start_date=data.get("start_date"),
            completed_at=data.get("completed_at"),
            estimated_hours=_opt_float(data.get("estimated_hours")),
            actual_hours=float(data.get("actual_hours") or 0.0),
            labels=[str(v) for v in list(data.get("labels") or [])],
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STATUSES

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        due = parse_iso(self.due_date)
        if due is None or self.is_done:
            return False
        return due < (now or utcnow())

    def task_key(self, project_key: str) -> str:
        return f"{project_key}-{self.task_number}"

    def depends_on(self, task_id: str) -> bool:
        return any(dep.depends_on_task_id == task_id for dep in self.dependencies)

    def touch(self) -> None:
        self.updated_at = now_iso()

    def set_status(self, new_status: TaskStatus) -> None:
        """Move to *new_status*, stamping ``completed_at`` on first completion."""
        self.status = new_status
        if self.is_done:
            if not self.completed_at:
                self.completed_at = now_iso()
        else:
            self.completed_at = None
        self.touch()


# ---------------------------------------------------------------------------
# Milestones and phases
# ---------------------------------------------------------------------------

@dataclass
class Milestone:
    id: str = field(default_factory=lambda: _id("ms"))
    project_id: str = ""
    name: str = ""
    description: str = ""
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    completed_at: Optional[str] = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    order: int = 0
    color: str = "#10B981"
    owner: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Milestone":
        return cls(
            id=str(data.get("id") or _id("ms")),
            project_id=str(data.get("project_id") or ""),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            due_date=data.get("due_date"),
            start_date=data.get("start_date"),
            completed_at=data.get("completed_at"),
            status=_enum(MilestoneStatus, data.get("status"), MilestoneStatus.PENDING),
            order=int(data.get("order") or 0),
            color=str(data.get("color") or "#10B981"),
            owner=data.get("owner"),
            created_by=data.get("created_by"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )


@dataclass
class Phase:
    id: str = field(default_factory=lambda: _id("phase"))
    project_id: str = ""
    name: str = ""
    description: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    order: int = 0
    color: str = "#3B82F6"
    created_by: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Phase":
        return cls(
            id=str(data.get("id") or _id("phase")),
            project_id=str(data.get("project_id") or ""),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            start_date=data.get("start_date"),
            end_date=data.get("end_date"),
            order=int(data.get("order") or 0),
            color=str(data.get("color") or "#3B82F6"),
            created_by=data.get("created_by"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def expiry_after(created_at: str, days: int = NOTIFICATION_TTL_DAYS) -> str:
    base = parse_iso(created_at) or utcnow()
    return (base + timedelta(days=days)).isoformat()


@dataclass
class Notification:
    id: str = field(default_factory=lambda: _id("ntf"))
    user_id: str = ""
    type: NotificationType = NotificationType.TASK_UPDATED
    title: str = ""
    message: str = ""
    link: Optional[str] = None
    read: bool = False
    read_at: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None
    project_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    email_sent: bool = False
    email_sent_at: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    expires_at: str = ""

    def __post_init__(self) -> None:
        if not self.expires_at:
            self.expires_at = expiry_after(self.created_at)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires = parse_iso(self.expires_at)
        return expires is not None and expires <= (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        return cls(
            id=str(data.get("id") or _id("ntf")),
            user_id=str(data.get("user_id") or ""),
            type=_enum(NotificationType, data.get("type"), NotificationType.TASK_UPDATED),
            title=str(data.get("title") or ""),
            message=str(data.get("message") or ""),
            link=data.get("link"),
            read=bool(data.get("read", False)),
            read_at=data.get("read_at"),
            data=dict(data.get("data") or {}),
            actor_id=data.get("actor_id"),
            project_id=data.get("project_id"),
            entity_type=data.get("entity_type"),
            entity_id=data.get("entity_id"),
            email_sent=bool(data.get("email_sent", False)),
            email_sent_at=data.get("email_sent_at"),
            created_at=str(data.get("created_at") or now_iso()),
            expires_at=str(data.get("expires_at") or ""),
        )


@dataclass
class NotificationSetting:
    email: bool = True
    in_app: bool = True
    push: bool = True

    def allows(self, channel: str) -> bool:
        return bool(getattr(self, channel, True))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationSetting":
        return cls(
            email=bool(data.get("email", True)),
            in_app=bool(data.get("in_app", True)),
            push=bool(data.get("push", True)),
        )


@dataclass
class NotificationPreference:
    id: str = field(default_factory=lambda: _id("npref"))
    user_id: str = ""
    email_enabled: bool = True
    in_app_enabled: bool = True
    push_enabled: bool = False
    digest_enabled: bool = False
    digest_frequency: str = "daily"
    digest_time: str = "09:00"
    quiet_hours_enabled: bool = False
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    settings: dict[str, NotificationSetting] = field(default_factory=dict)
    muted_projects: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    version: int = 0

    def setting_for(self, notification_type: str) -> NotificationSetting:
        return self.settings.get(notification_type) or NotificationSetting()

    def is_project_muted(self, project_id: Optional[str]) -> bool:
        return bool(project_id) and project_id in self.muted_projects

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["settings"] = {k: v.to_dict() for k, v in self.settings.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationPreference":
        raw_settings = data.get("settings") or {}
        settings = {
            str(k): NotificationSetting.from_dict(v)
            for k, v in raw_settings.items()
            if isinstance(v, dict)
        }
        return cls(
            id=str(data.get("id") or _id("npref")),
            user_id=str(data.get("user_id") or ""),
            email_enabled=bool(data.get("email_enabled", True)),
            in_app_enabled=bool(data.get("in_app_enabled", True)),
            push_enabled=bool(data.get("push_enabled", False)),
            digest_enabled=bool(data.get("digest_enabled", False)),
            digest_frequency=str(data.get("digest_frequency") or "daily"),
            digest_time=str(data.get("digest_time") or "09:00"),
            quiet_hours_enabled=bool(data.get("quiet_hours_enabled", False)),
            quiet_hours_start=str(data.get("quiet_hours_start") or "22:00"),
            quiet_hours_end=str(data.get("quiet_hours_end") or "08:00"),
            settings=settings,
            muted_projects=[str(p) for p in list(data.get("muted_projects") or [])],
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            version=int(data.get("version") or 0),
        )
