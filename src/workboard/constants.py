"""Enumerations and fixed values shared across the workboard package."""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    CLOSED = "closed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DependencyType(str, Enum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class NotificationType(str, Enum):
    TASK_ASSIGNED = "task_assigned"
    TASK_UPDATED = "task_updated"
    TASK_COMPLETED = "task_completed"
    COMMENT_ADDED = "comment_added"
    MENTION = "mention"
    DEADLINE_REMINDER = "deadline_reminder"
    MILESTONE_DUE = "milestone_due"
    PROJECT_INVITATION = "project_invitation"
    TIMESHEET_APPROVAL = "timesheet_approval"
    ISSUE_ASSIGNED = "issue_assigned"
    ISSUE_UPDATED = "issue_updated"


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"


class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    PROJECT_ADMIN = "project_admin"
    PROJECT_MANAGER = "project_manager"
    TEAM_MEMBER = "team_member"
    CLIENT = "client"


ROLE_HIERARCHY: dict[str, int] = {
    UserRole.SUPER_ADMIN.value: 4,
    UserRole.PROJECT_ADMIN.value: 3,
    UserRole.PROJECT_MANAGER.value: 2,
    UserRole.TEAM_MEMBER.value: 1,
    UserRole.CLIENT.value: 0,
}

# Statuses that count as "done" for progress, gating and overdue checks.
DONE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CLOSED})

# Target statuses that require every dependency to be done first.
GATED_STATUSES = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED})

TASK_TITLE_MAX = 200
NOTIFICATION_TITLE_MAX = 200
NOTIFICATION_MESSAGE_MAX = 500
NOTIFICATION_TTL_DAYS = 90
READ_NOTIFICATION_RETENTION_DAYS = 30

STATE_DIR_NAME = ".workboard"
SCHEMA_VERSION = 1
