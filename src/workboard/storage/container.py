from __future__ import annotations

from pathlib import Path

from .bootstrap import ensure_state_root
from .file_repos import (
    FileEventRepository,
    FileMilestoneRepository,
    FileNotificationPreferenceRepository,
    FileNotificationRepository,
    FilePhaseRepository,
    FileProjectRepository,
    FileTaskRepository,
    FileUserRepository,
)


class Container:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir.resolve()
        self.state_root = ensure_state_root(self.data_dir)
        root = self.state_root

        self.projects = FileProjectRepository(root / "projects.yaml", root / "projects.lock")
        self.users = FileUserRepository(root / "users.yaml", root / "users.lock")
        self.tasks = FileTaskRepository(root / "tasks.yaml", root / "tasks.lock")
        self.milestones = FileMilestoneRepository(root / "milestones.yaml", root / "milestones.lock")
        self.phases = FilePhaseRepository(root / "phases.yaml", root / "phases.lock")
        self.notifications = FileNotificationRepository(root / "notifications.yaml", root / "notifications.lock")
        self.preferences = FileNotificationPreferenceRepository(
            root / "notification_preferences.yaml", root / "notification_preferences.lock"
        )
        self.events = FileEventRepository(root / "events.jsonl", root / "events.lock")
