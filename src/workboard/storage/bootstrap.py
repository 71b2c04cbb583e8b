from __future__ import annotations

from pathlib import Path

from ..constants import SCHEMA_VERSION, STATE_DIR_NAME
from .file_repos import FileConfigRepository


STATE_FILES = {
    "projects": "projects.yaml",
    "users": "users.yaml",
    "tasks": "tasks.yaml",
    "milestones": "milestones.yaml",
    "phases": "phases.yaml",
    "notifications": "notifications.yaml",
    "preferences": "notification_preferences.yaml",
    "events": "events.jsonl",
    "config": "config.yaml",
}


def ensure_state_root(data_dir: Path) -> Path:
    """Create ``<data_dir>/.workboard`` with empty collection files."""
    root = data_dir / STATE_DIR_NAME
    root.mkdir(parents=True, exist_ok=True)

    for file_name in STATE_FILES.values():
        target = root / file_name
        if file_name.endswith(".yaml") and not target.exists():
            target.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")
        if file_name.endswith(".jsonl") and not target.exists():
            target.touch()

    config_repo = FileConfigRepository(root / "config.yaml", root / "config.lock")
    config = config_repo.load()
    config["schema_version"] = SCHEMA_VERSION
    config_repo.save(config)

    return root
