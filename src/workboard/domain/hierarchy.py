"""Parent/subtask tree helpers.

All functions here are pure: they take already-loaded tasks and return
decisions or new records.  Trees are walked with explicit worklists so deep
hierarchies never hit the interpreter recursion limit.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Callable, Iterable, Optional

from .models import Task


def percentage(done: int, total: int) -> int:
    """Integer percentage rounded half-up (``1/8`` -> 13, ``1/3`` -> 33)."""
    if total <= 0:
        return 0
    return (200 * done + total) // (2 * total)


def rollup_progress(subtasks: Iterable[Task]) -> Optional[int]:
    """Return the parent progress implied by *subtasks*.

    ``None`` means the parent has no subtasks and its manually-set progress
    must be left alone.
    """
    items = list(subtasks)
    if not items:
        return None
    done = sum(1 for t in items if t.is_done)
    return percentage(done, len(items))


def children_index(tasks: Iterable[Task]) -> dict[str, list[Task]]:
    index: dict[str, list[Task]] = defaultdict(list)
    for task in tasks:
        if task.parent_task_id:
            index[task.parent_task_id].append(task)
    return index


def sort_siblings(tasks: Iterable[Task]) -> list[Task]:
    return sorted(tasks, key=lambda t: (t.order, t.created_at))


def collect_descendants(root_id: str, tasks: Iterable[Task]) -> list[Task]:
    """All tasks below *root_id*, breadth first, excluding the root itself."""
    index = children_index(tasks)
    out: list[Task] = []
    seen = {root_id}
    queue: deque[str] = deque([root_id])
    while queue:
        current = queue.popleft()
        for child in index.get(current, []):
            if child.id in seen:
                continue
            seen.add(child.id)
            out.append(child)
            queue.append(child.id)
    return out


def plan_duplicate(
    roots: Iterable[Task],
    tasks: Iterable[Task],
    make_copy: Callable[[Task, Optional[str]], Task],
) -> list[Task]:
    """Copy each root and its full subtree.

    ``make_copy(source, new_parent_id)`` builds the new record; this function
    only decides the walk order and the parent remapping.  Parents are always
    emitted before their children.
    """
    index = children_index(tasks)
    created: list[Task] = []
    stack: list[tuple[Task, Optional[str]]] = [(root, None) for root in reversed(list(roots))]
    while stack:
        source, new_parent_id = stack.pop()
        copy = make_copy(source, new_parent_id)
        created.append(copy)
        for child in reversed(sort_siblings(index.get(source.id, []))):
            stack.append((child, copy.id))
    return created
