"""Milestone and phase progress aggregation.

Progress for milestones and phases is never stored.  It is computed from the
current task set every time it is read.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from ..constants import MilestoneStatus, TaskStatus
from .hierarchy import percentage
from .models import Task, parse_iso


def completion_percentage(tasks: Iterable[Task]) -> int:
    items = list(tasks)
    done = sum(1 for t in items if t.is_done)
    return percentage(done, len(items))


def derive_milestone_status(
    progress: int,
    due_date: Optional[str],
    now: datetime,
    completed_at: Optional[str],
) -> tuple[MilestoneStatus, Optional[str]]:
    """Return ``(status, completed_at)`` for a milestone at *now*.

    ``completed_at`` is stamped the first time progress reaches 100 and kept
    while the milestone stays complete.  Any other status clears it.
    """
    if progress >= 100:
        return MilestoneStatus.COMPLETED, completed_at or now.isoformat()
    if progress > 0:
        return MilestoneStatus.IN_PROGRESS, None
    due = parse_iso(due_date)
    if due is not None and due < now:
        return MilestoneStatus.OVERDUE, None
    return MilestoneStatus.PENDING, None


def status_counts(tasks: Iterable[Task]) -> dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status.value] += 1
    return counts


def time_progress(start_date: Optional[str], end_date: Optional[str], now: datetime) -> Optional[int]:
    start = parse_iso(start_date)
    end = parse_iso(end_date)
    if start is None or end is None:
        return None
    total = (end - start).total_seconds()
    if total <= 0:
        return 100 if now >= end else 0
    elapsed = (now - start).total_seconds()
    return max(0, min(100, round(elapsed / total * 100)))


def phase_report(tasks: Iterable[Task], start_date: Optional[str], end_date: Optional[str], now: datetime) -> dict[str, Any]:
    items = list(tasks)
    done = sum(1 for t in items if t.is_done)
    return {
        "total_tasks": len(items),
        "completed_tasks": done,
        "progress": percentage(done, len(items)),
        "by_status": status_counts(items),
        "estimated_hours": sum(t.estimated_hours or 0.0 for t in items),
        "actual_hours": sum(t.actual_hours or 0.0 for t in items),
        "time_progress": time_progress(start_date, end_date, now),
    }
