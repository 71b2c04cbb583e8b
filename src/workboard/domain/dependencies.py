"""Dependency graph checks: cycle detection and transition gating."""

from __future__ import annotations

from typing import Iterable, Mapping

from ..constants import GATED_STATUSES, TaskStatus
from .models import Task


def would_create_cycle(task_id: str, depends_on_id: str, tasks: Mapping[str, Task]) -> bool:
    """True when adding ``task_id -> depends_on_id`` closes a loop.

    Walks depth first from *depends_on_id* along each visited task's own
    dependency edges.  Visited nodes are not expanded twice and edges to
    tasks that no longer exist are skipped.
    """
    if task_id == depends_on_id:
        return True
    visited: set[str] = set()
    stack = [depends_on_id]
    while stack:
        current = stack.pop()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        node = tasks.get(current)
        if node is None:
            continue
        for dep in node.dependencies:
            if dep.depends_on_task_id not in visited:
                stack.append(dep.depends_on_task_id)
    return False


def find_blockers(task: Task, new_status: TaskStatus, tasks: Mapping[str, Task]) -> list[dict[str, str]]:
    """Incomplete dependencies that forbid moving *task* to *new_status*.

    Only ``in_progress`` and ``completed`` are gated; every other target is
    always allowed.  Every dependency type gates the same way.
    """
    if new_status not in GATED_STATUSES:
        return []
    blocking: list[dict[str, str]] = []
    for dep in task.dependencies:
        target = tasks.get(dep.depends_on_task_id)
        if target is None or target.is_done:
            continue
        blocking.append({"id": target.id, "title": target.title})
    return blocking


def dependents_of(task_id: str, tasks: Iterable[Task]) -> list[Task]:
    return [t for t in tasks if t.depends_on(task_id)]


def dependency_graph(tasks: Iterable[Task]) -> dict[str, list[str]]:
    return {t.id: [d.depends_on_task_id for d in t.dependencies] for t in tasks}


def strip_references(task: Task, removed_ids: set[str]) -> bool:
    """Drop edges pointing at *removed_ids*; return True if anything changed."""
    kept = [d for d in task.dependencies if d.depends_on_task_id not in removed_ids]
    if len(kept) == len(task.dependencies):
        return False
    task.dependencies = kept
    return True
