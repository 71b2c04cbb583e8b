from __future__ import annotations

import json
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from ..errors import ConcurrencyConflict, InvalidOperation, NotFound
from ..io_utils import FileLock, append_jsonl, atomic_write_yaml, read_yaml
from ..domain.models import (
    Milestone,
    Notification,
    NotificationPreference,
    Phase,
    Project,
    Task,
    TaskDependency,
    User,
    now_iso,
    utcnow,
)
from .interfaces import (
    EventRepository,
    MilestoneRepository,
    NotificationPreferenceRepository,
    NotificationRepository,
    PhaseRepository,
    ProjectRepository,
    TaskRepository,
    UserRepository,
)


T = TypeVar("T")

_TASK_LIST_FIELDS = {"assignee_ids", "watchers", "labels", "dependencies"}
_TASK_NUMERIC_FIELDS = {"actual_hours", "estimated_hours"}


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        raw = read_yaml(self._path)
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _save(self, items: list[T]) -> None:
        payload = {"version": 1, self._key: [self._dumper(item) for item in items]}
        atomic_write_yaml(self._path, payload)

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._thread_lock:
            with self._lock:
                yield

    def read(self) -> list[T]:
        with self.locked():
            return self._load()


class _VersionedRepo(Generic[T]):
    """Shared CRUD for records that carry ``id``, ``version`` and ``updated_at``.

    Every write is a read-modify-write of the whole collection under the
    file lock.  ``upsert`` compares the caller's ``version`` against the
    stored one and raises :class:`ConcurrencyConflict` on mismatch.
    """

    entity_name = "record"

    def __init__(self, repo: _YamlCollectionRepo[T]) -> None:
        self._repo = repo

    def _list(self, project_id: Optional[str] = None) -> list[T]:
        items = self._repo.read()
        if project_id is None:
            return items
        return [item for item in items if getattr(item, "project_id", None) == project_id]

    def get(self, entity_id: str) -> Optional[T]:
        for item in self._repo.read():
            if getattr(item, "id") == entity_id:
                return item
        return None

    def _insert(self, item: T, prepare: Optional[Callable[[list[T], T], None]] = None) -> T:
        with self._repo.locked():
            items = self._repo._load()
            if any(getattr(existing, "id") == getattr(item, "id") for existing in items):
                raise InvalidOperation(f"{self.entity_name} already exists: {getattr(item, 'id')}")
            if prepare is not None:
                prepare(items, item)
            setattr(item, "version", 1)
            setattr(item, "updated_at", now_iso())
            items.append(item)
            self._repo._save(items)
        return item

    def upsert(self, item: T) -> T:
        item_id = getattr(item, "id")
        with self._repo.locked():
            items = self._repo._load()
            for idx, existing in enumerate(items):
                if getattr(existing, "id") != item_id:
                    continue
                stored = int(getattr(existing, "version") or 0)
                given = int(getattr(item, "version") or 0)
                if stored != given:
                    raise ConcurrencyConflict(self.entity_name, item_id, given, stored)
                setattr(item, "version", stored + 1)
                setattr(item, "updated_at", now_iso())
                items[idx] = item
                break
            else:
                setattr(item, "version", 1)
                setattr(item, "updated_at", now_iso())
                items.append(item)
            self._repo._save(items)
        return item

    def update(self, entity_id: str, mutator: Callable[[T], None]) -> T:
        with self._repo.locked():
            items = self._repo._load()
            for item in items:
                if getattr(item, "id") == entity_id:
                    mutator(item)
                    setattr(item, "version", int(getattr(item, "version") or 0) + 1)
                    setattr(item, "updated_at", now_iso())
                    self._repo._save(items)
                    return item
        raise NotFound(self.entity_name, entity_id)

    def delete(self, entity_id: str) -> bool:
        with self._repo.locked():
            items = self._repo._load()
            keep = [item for item in items if getattr(item, "id") != entity_id]
            if len(keep) == len(items):
                return False
            self._repo._save(keep)
        return True


def _next_order(items: list[Any], project_id: str) -> int:
    orders = [item.order for item in items if item.project_id == project_id]
    return max(orders) + 1 if orders else 0


class FileTaskRepository(_VersionedRepo[Task], TaskRepository):
    entity_name = "Task"

    def __init__(self, path: Path, lock_path: Path) -> None:
        super().__init__(
            _YamlCollectionRepo[Task](path, lock_path, "tasks", loader=Task.from_dict, dumper=lambda t: t.to_dict())
        )

    def list(self, project_id: Optional[str] = None) -> list[Task]:
        return self._list(project_id)

    def create(self, task: Task) -> Task:
        def _number(items: list[Task], new: Task) -> None:
            numbers = [t.task_number for t in items if t.project_id == new.project_id]
            new.task_number = max(numbers) + 1 if numbers else 1

        return self._insert(task, _number)

    def update_with_snapshot(self, task_id: str, mutator: Callable[[Task, list[Task]], Optional[bool]]) -> Task:
        with self._repo.locked():
            tasks = self._repo._load()
            for task in tasks:
                if task.id != task_id:
                    continue
                if mutator(task, tasks) is False:
                    return task
                task.version += 1
                task.touch()
                self._repo._save(tasks)
                return task
        raise NotFound(self.entity_name, task_id)

    def push_unique(self, task_id: str, field_name: str, value: Any) -> Task:
        if field_name not in _TASK_LIST_FIELDS:
            raise InvalidOperation(f"Cannot push to task field: {field_name}")

        def _push(task: Task) -> None:
            values = getattr(task, field_name)
            if field_name == "dependencies":
                dep = value if isinstance(value, TaskDependency) else TaskDependency.from_dict(value)
                if not task.depends_on(dep.depends_on_task_id):
                    values.append(dep)
            elif value not in values:
                values.append(value)

        return self.update(task_id, _push)

    def pull(self, task_id: str, field_name: str, value: Any) -> Task:
        if field_name not in _TASK_LIST_FIELDS:
            raise InvalidOperation(f"Cannot pull from task field: {field_name}")

        def _pull(task: Task) -> None:
            if field_name == "dependencies":
                task.dependencies = [d for d in task.dependencies if d.depends_on_task_id != value]
            else:
                setattr(task, field_name, [v for v in getattr(task, field_name) if v != value])

        return self.update(task_id, _pull)

    def increment(self, task_id: str, field_name: str, delta: float) -> Task:
        if field_name not in _TASK_NUMERIC_FIELDS:
            raise InvalidOperation(f"Cannot increment task field: {field_name}")

        def _inc(task: Task) -> None:
            setattr(task, field_name, float(getattr(task, field_name) or 0.0) + delta)

        return self.update(task_id, _inc)

    def delete_many(self, task_ids: set[str]) -> int:
        if not task_ids:
            return 0
        with self._repo.locked():
            tasks = self._repo._load()
            keep = [t for t in tasks if t.id not in task_ids]
            removed = len(tasks) - len(keep)
            if removed:
                self._repo._save(keep)
        return removed

    def pull_dependency_refs(self, removed_ids: set[str]) -> int:
        if not removed_ids:
            return 0
        changed = 0
        with self._repo.locked():
            tasks = self._repo._load()
            for task in tasks:
                kept = [d for d in task.dependencies if d.depends_on_task_id not in removed_ids]
                if len(kept) != len(task.dependencies):
                    task.dependencies = kept
                    task.version += 1
                    task.touch()
                    changed += 1
            if changed:
                self._repo._save(tasks)
        return changed

    def unset_field(self, field_name: str, value: str) -> int:
        if field_name not in {"milestone_id", "phase_id"}:
            raise InvalidOperation(f"Cannot unset task field: {field_name}")
        changed = 0
        with self._repo.locked():
            tasks = self._repo._load()
            for task in tasks:
                if getattr(task, field_name) == value:
                    setattr(task, field_name, None)
                    task.version += 1
                    task.touch()
                    changed += 1
            if changed:
                self._repo._save(tasks)
        return changed


class FileMilestoneRepository(_VersionedRepo[Milestone], MilestoneRepository):
    entity_name = "Milestone"

    def __init__(self, path: Path, lock_path: Path) -> None:
        super().__init__(
            _YamlCollectionRepo[Milestone](path, lock_path, "milestones", loader=Milestone.from_dict, dumper=lambda m: m.to_dict())
        )

    def list(self, project_id: Optional[str] = None) -> list[Milestone]:
        return self._list(project_id)

    def create(self, milestone: Milestone) -> Milestone:
        def _order(items: list[Milestone], new: Milestone) -> None:
            new.order = _next_order(items, new.project_id)

        return self._insert(milestone, _order)


class FilePhaseRepository(_VersionedRepo[Phase], PhaseRepository):
    entity_name = "Phase"

    def __init__(self, path: Path, lock_path: Path) -> None:
        super().__init__(
            _YamlCollectionRepo[Phase](path, lock_path, "phases", loader=Phase.from_dict, dumper=lambda p: p.to_dict())
        )

    def list(self, project_id: Optional[str] = None) -> list[Phase]:
        return self._list(project_id)

    def create(self, phase: Phase) -> Phase:
        def _order(items: list[Phase], new: Phase) -> None:
            new.order = _next_order(items, new.project_id)

        return self._insert(phase, _order)


class FileNotificationRepository(NotificationRepository):
    """Notification inbox storage.

    Rows past their ``expires_at`` are invisible to reads and dropped on the
    next write.
    """

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Notification](
            path,
            lock_path,
            "notifications",
            loader=Notification.from_dict,
            dumper=lambda n: n.to_dict(),
        )

    def _live(self, items: list[Notification]) -> list[Notification]:
        now = utcnow()
        return [n for n in items if not n.is_expired(now)]

    def create(self, notification: Notification) -> Notification:
        with self._repo.locked():
            items = self._live(self._repo._load())
            items.append(notification)
            self._repo._save(items)
        return notification

    def get(self, notification_id: str) -> Optional[Notification]:
        for item in self._live(self._repo.read()):
            if item.id == notification_id:
                return item
        return None

    def list_for_user(self, user_id: str) -> list[Notification]:
        items = [n for n in self._live(self._repo.read()) if n.user_id == user_id]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items

    def update(self, notification_id: str, mutator: Callable[[Notification], None]) -> Notification:
        with self._repo.locked():
            items = self._live(self._repo._load())
            for item in items:
                if item.id == notification_id:
                    mutator(item)
                    self._repo._save(items)
                    return item
        raise NotFound("Notification", notification_id)

    def mark_all_read(self, user_id: str, read_at: str) -> int:
        count = 0
        with self._repo.locked():
            items = self._live(self._repo._load())
            for item in items:
                if item.user_id == user_id and not item.read:
                    item.read = True
                    item.read_at = read_at
                    count += 1
            self._repo._save(items)
        return count

    def delete(self, notification_id: str) -> bool:
        with self._repo.locked():
            items = self._live(self._repo._load())
            keep = [n for n in items if n.id != notification_id]
            self._repo._save(keep)
        return len(keep) != len(items)

    def delete_read_before(self, cutoff_iso: str) -> int:
        with self._repo.locked():
            items = self._live(self._repo._load())
            keep = [n for n in items if not (n.read and n.created_at < cutoff_iso)]
            self._repo._save(keep)
        return len(items) - len(keep)


class FileNotificationPreferenceRepository(NotificationPreferenceRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[NotificationPreference](
            path,
            lock_path,
            "preferences",
            loader=NotificationPreference.from_dict,
            dumper=lambda p: p.to_dict(),
        )
        self._versioned = _VersionedRepo[NotificationPreference](self._repo)
        self._versioned.entity_name = "NotificationPreference"

    def get_by_user(self, user_id: str) -> Optional[NotificationPreference]:
        for pref in self._repo.read():
            if pref.user_id == user_id:
                return pref
        return None

    def get_or_create(self, user_id: str) -> NotificationPreference:
        with self._repo.locked():
            items = self._repo._load()
            for pref in items:
                if pref.user_id == user_id:
                    return pref
            pref = NotificationPreference(user_id=user_id, version=1)
            items.append(pref)
            self._repo._save(items)
        return pref

    def upsert(self, pref: NotificationPreference) -> NotificationPreference:
        return self._versioned.upsert(pref)


class FileProjectRepository(ProjectRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Project](path, lock_path, "projects", loader=Project.from_dict, dumper=lambda p: p.to_dict())

    def list(self) -> list[Project]:
        return self._repo.read()

    def get(self, project_id: str) -> Optional[Project]:
        for project in self.list():
            if project.id == project_id:
                return project
        return None

    def upsert(self, project: Project) -> Project:
        with self._repo.locked():
            items = [p for p in self._repo._load() if p.id != project.id]
            items.append(project)
            self._repo._save(items)
        return project


class FileUserRepository(UserRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[User](path, lock_path, "users", loader=User.from_dict, dumper=lambda u: u.to_dict())

    def list(self) -> list[User]:
        return self._repo.read()

    def get(self, user_id: str) -> Optional[User]:
        for user in self.list():
            if user.id == user_id:
                return user
        return None

    def upsert(self, user: User) -> User:
        with self._repo.locked():
            items = [u for u in self._repo._load() if u.id != user.id]
            items.append(user)
            self._repo._save(items)
        return user


class FileEventRepository(EventRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: Optional[str]) -> dict[str, Any]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "channel": channel,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
            "project_id": project_id,
        }
        with self._thread_lock:
            with self._lock:
                append_jsonl(self._path, event)
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0 or not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    selected = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in selected:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events


class FileConfigRepository:
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                return read_yaml(self._path)

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                atomic_write_yaml(self._path, config)
        return config
