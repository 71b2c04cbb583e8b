from .models import (
    Milestone,
    Notification,
    NotificationPreference,
    NotificationSetting,
    Phase,
    Project,
    Task,
    TaskDependency,
    User,
)

__all__ = [
    "Task",
    "TaskDependency",
    "Milestone",
    "Phase",
    "Project",
    "User",
    "Notification",
    "NotificationSetting",
    "NotificationPreference",
]
