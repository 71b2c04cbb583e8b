"""Notification routing, inbox and preference management.

Routing turns a domain event into per-recipient deliveries.  Recipients are
de-duplicated and the acting user is dropped; each remaining recipient is
then gated by their :class:`NotificationPreference` (project mute, channel
toggles, quiet hours, per-type overrides) and delivered to the in-app,
email and push sinks.  Every recipient is handled in isolation: a failure
for one is logged and reported in its :class:`DeliveryResult` without
affecting the others or the mutation that triggered the event.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from ..config import Settings
from ..constants import (
    NOTIFICATION_MESSAGE_MAX,
    NOTIFICATION_TITLE_MAX,
    READ_NOTIFICATION_RETENTION_DAYS,
    Channel,
    MilestoneStatus,
    NotificationType,
)
from ..domain.models import (
    Milestone,
    Notification,
    NotificationPreference,
    NotificationSetting,
    Project,
    Task,
    expiry_after,
    now_iso,
    parse_iso,
    utcnow,
)
from ..domain.preferences import local_hhmm, should_notify
from ..errors import InvalidOperation, NotFound
from ..events.bus import EventBus
from ..storage.container import Container
from .email import EmailTransport, NullEmailTransport
from .push import PushSink


_HHMM_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")


def _clock_time(value: Any) -> str:
    text = str(value).strip()
    if not _HHMM_RE.match(text):
        raise InvalidOperation(f"Expected a time as HH:MM, got '{value}'")
    return text


_PREFERENCE_FIELDS = {
    "email_enabled": bool,
    "in_app_enabled": bool,
    "push_enabled": bool,
    "digest_enabled": bool,
    "digest_frequency": str,
    "digest_time": _clock_time,
    "quiet_hours_enabled": bool,
    "quiet_hours_start": _clock_time,
    "quiet_hours_end": _clock_time,
}


@dataclass
class NotificationEvent:
    """What happened, independent of who is told about it."""

    type: NotificationType
    title: str
    message: str
    link: Optional[str] = None
    actor_id: Optional[str] = None
    project_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    # Extra fields only the email template needs.
    email_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    user_id: str
    in_app: bool = False
    email: bool = False
    push: bool = False
    notification_id: Optional[str] = None
    skipped: Optional[str] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.in_app or self.email or self.push

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def unique_recipients(user_ids: Iterable[Optional[str]], exclude: Optional[str] = None) -> list[str]:
    """Drop blanks, duplicates and *exclude*, keeping first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for user_id in user_ids:
        if not user_id or user_id == exclude or user_id in seen:
            continue
        seen.add(user_id)
        out.append(user_id)
    return out


def due_text(days_until_due: int) -> str:
    if days_until_due <= 0:
        return "today"
    if days_until_due == 1:
        return "tomorrow"
    return f"in {days_until_due} days"


class NotificationService:
    def __init__(
        self,
        container: Container,
        bus: EventBus,
        email: Optional[EmailTransport] = None,
        push: Optional[PushSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.container = container
        self.bus = bus
        self.email = email or NullEmailTransport()
        self.push = push or PushSink()
        self.settings = settings or Settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def notify(self, user_id: str, event: NotificationEvent) -> DeliveryResult:
        """Deliver *event* to one recipient. Never raises."""
        result = DeliveryResult(user_id=user_id)
        try:
            self._deliver(user_id, event, result)
        except Exception as exc:
            logger.exception("Failed to deliver {} notification to {}", event.type.value, user_id)
            result.error = str(exc)
        return result

    def notify_many(self, user_ids: Iterable[Optional[str]], event: NotificationEvent) -> list[DeliveryResult]:
        """Deliver *event* to each recipient independently.

        The acting user and duplicate ids are dropped first.  All recipients
        are attempted even when some fail.
        """
        recipients = unique_recipients(user_ids, exclude=event.actor_id)
        return [self.notify(user_id, event) for user_id in recipients]

    def _deliver(self, user_id: str, event: NotificationEvent, result: DeliveryResult) -> None:
        pref = self.container.preferences.get_or_create(user_id)
        if pref.is_project_muted(event.project_id):
            result.skipped = "project_muted"
            return

        current = local_hhmm(self.clock(), self.settings.timezone)
        kind = event.type.value
        notification: Optional[Notification] = None

        if should_notify(pref, kind, Channel.IN_APP, current):
            created_at = now_iso()
            notification = self.container.notifications.create(
                Notification(
                    created_at=created_at,
                    expires_at=expiry_after(created_at, self.settings.notification_ttl_days),
                    user_id=user_id,
                    type=event.type,
                    title=event.title[:NOTIFICATION_TITLE_MAX],
                    message=event.message[:NOTIFICATION_MESSAGE_MAX],
                    link=event.link,
                    data=dict(event.data),
                    actor_id=event.actor_id,
                    project_id=event.project_id,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                )
            )
            result.in_app = True
            result.notification_id = notification.id
            self.bus.emit_to_user(user_id, "notification", notification.to_dict())

        if should_notify(pref, kind, Channel.EMAIL, current):
            result.email = self._send_email(user_id, event, notification)

        if should_notify(pref, kind, Channel.PUSH, current):
            result.push = self.push.push(user_id, event.title, event.message, dict(event.data))

        if not result.delivered:
            result.skipped = result.skipped or "preferences"

    def _send_email(self, user_id: str, event: NotificationEvent, notification: Optional[Notification]) -> bool:
        user = self.container.users.get(user_id)
        if user is None or not user.email:
            return False
        data = {
            "title": event.title,
            "message": event.message,
            "link": self._absolute_link(event.link),
            **event.email_data,
        }
        try:
            sent = self.email.send_templated_email(user.email, event.type.value, data)
        except Exception:
            logger.exception("Error sending {} email to {}", event.type.value, user_id)
            return False
        if sent and notification is not None:
            def _mark(n: Notification) -> None:
                n.email_sent = True
                n.email_sent_at = now_iso()

            self.container.notifications.update(notification.id, _mark)
        return sent

    def _absolute_link(self, link: Optional[str]) -> str:
        if not link:
            return self.settings.frontend_url
        if link.startswith("http://") or link.startswith("https://"):
            return link
        return f"{self.settings.frontend_url}{link}"

    def _name(self, user_id: Optional[str]) -> str:
        user = self.container.users.get(user_id) if user_id else None
        return user.full_name if user and user.full_name else "Someone"

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def notify_task_assignment(self, task: Task, assignee_ids: Iterable[str], actor_id: Optional[str], project: Optional[Project] = None) -> list[DeliveryResult]:
        actor_name = self._name(actor_id)
        event = NotificationEvent(
            type=NotificationType.TASK_ASSIGNED,
            title="New Task Assigned",
            message=f'{actor_name} assigned you to "{task.title}"',
            link=f"/projects/{task.project_id}/tasks/{task.id}",
            actor_id=actor_id,
            project_id=task.project_id,
            entity_type="task",
            entity_id=task.id,
            email_data={
                "task": task.to_dict(),
                "actor_name": actor_name,
                "project_name": project.name if project else "",
            },
        )
        return self.notify_many(assignee_ids, event)

    def notify_task_update(self, task: Task, actor_id: Optional[str], changes: Optional[dict[str, Any]] = None) -> list[DeliveryResult]:
        actor_name = self._name(actor_id)
        completed = bool(changes and changes.get("status") in {"completed", "closed"})
        event = NotificationEvent(
            type=NotificationType.TASK_COMPLETED if completed else NotificationType.TASK_UPDATED,
            title="Task Completed" if completed else "Task Updated",
            message=f'{actor_name} {"completed" if completed else "updated"} "{task.title}"',
            link=f"/projects/{task.project_id}/tasks/{task.id}",
            actor_id=actor_id,
            project_id=task.project_id,
            entity_type="task",
            entity_id=task.id,
            data={"changes": dict(changes or {})},
        )
        return self.notify_many([*task.assignee_ids, task.created_by, *task.watchers], event)

    def notify_comment(
        self,
        task: Task,
        author_id: str,
        comment_id: str,
        content: str,
        mentions: Iterable[str] = (),
    ) -> list[DeliveryResult]:
        mentioned = list(mentions)
        author_name = self._name(author_id)
        link = f"/projects/{task.project_id}/tasks/{task.id}"
        results = self.notify_many(
            [*task.assignee_ids, task.created_by, *task.watchers, *mentioned],
            NotificationEvent(
                type=NotificationType.COMMENT_ADDED,
                title="New Comment",
                message=f'{author_name} commented on "{task.title}"',
                link=link,
                actor_id=author_id,
                project_id=task.project_id,
                entity_type="task",
                entity_id=task.id,
            ),
        )
        mention = NotificationEvent(
            type=NotificationType.MENTION,
            title="You were mentioned",
            message=f"{author_name} mentioned you in a comment",
            link=link,
            actor_id=author_id,
            project_id=task.project_id,
            entity_type="comment",
            entity_id=comment_id,
            email_data={
                "actor_name": author_name,
                "entity_type": "task",
                "entity_title": task.title,
                "content": content,
            },
        )
        results.extend(self.notify_many(mentioned, mention))
        return results

    def notify_milestone_due(self, milestone: Milestone, project: Project, days_until_due: int) -> list[DeliveryResult]:
        when = due_text(days_until_due)
        event = NotificationEvent(
            type=NotificationType.MILESTONE_DUE,
            title="Milestone Due Soon",
            message=f'Milestone "{milestone.name}" is due {when}',
            link=f"/projects/{project.id}/milestones",
            project_id=project.id,
            entity_type="milestone",
            entity_id=milestone.id,
            data={"days_until_due": days_until_due},
            email_data={
                "milestone_name": milestone.name,
                "project_name": project.name,
                "due_date": milestone.due_date,
                "due_text": when,
            },
        )
        return self.notify_many(project.members, event)

    def notify_deadline_reminder(self, task: Task, project: Optional[Project], days_until_due: int) -> list[DeliveryResult]:
        when = due_text(days_until_due)
        event = NotificationEvent(
            type=NotificationType.DEADLINE_REMINDER,
            title="Task Deadline Reminder",
            message=f'"{task.title}" is due {when}',
            link=f"/projects/{task.project_id}/tasks/{task.id}",
            project_id=task.project_id,
            entity_type="task",
            entity_id=task.id,
            data={"days_until_due": days_until_due},
            email_data={
                "task": task.to_dict(),
                "project_name": project.name if project else "",
                "due_text": when,
            },
        )
        return self.notify_many(task.assignee_ids, event)

    def notify_issue_assignment(
        self,
        issue_id: str,
        issue_title: str,
        assignee_id: str,
        actor_id: Optional[str],
        project_id: Optional[str],
    ) -> list[DeliveryResult]:
        event = NotificationEvent(
            type=NotificationType.ISSUE_ASSIGNED,
            title="Issue Assigned",
            message=f'{self._name(actor_id)} assigned you to issue "{issue_title}"',
            link=f"/projects/{project_id}/issues/{issue_id}",
            actor_id=actor_id,
            project_id=project_id,
            entity_type="issue",
            entity_id=issue_id,
        )
        return self.notify_many([assignee_id], event)

    def notify_timesheet_approval(self, user_id: str, approver_id: str, status: str, project_name: str) -> list[DeliveryResult]:
        if status not in {"approved", "rejected"}:
            raise InvalidOperation(f"Unknown timesheet status: {status}")
        event = NotificationEvent(
            type=NotificationType.TIMESHEET_APPROVAL,
            title=f"Timesheet {status.capitalize()}",
            message=f"{self._name(approver_id)} {status} your timesheet for {project_name}",
            link="/timesheets",
            actor_id=approver_id,
        )
        return self.notify_many([user_id], event)

    # ------------------------------------------------------------------
    # Scheduled sweeps
    # ------------------------------------------------------------------

    def send_deadline_reminders(self, days: int = 1) -> list[DeliveryResult]:
        """Remind assignees of open tasks due within *days* (calendar days)."""
        today = self.clock().date()
        results: list[DeliveryResult] = []
        projects = {p.id: p for p in self.container.projects.list()}
        for task in self.container.tasks.list():
            if task.is_done or not task.due_date or not task.assignee_ids:
                continue
            due = parse_iso(task.due_date)
            if due is None:
                continue
            remaining = (due.date() - today).days
            if 0 <= remaining <= days:
                results.extend(self.notify_deadline_reminder(task, projects.get(task.project_id), remaining))
        logger.info("Deadline reminder sweep produced {} deliveries", len(results))
        return results

    def send_milestone_reminders(self, days: int = 3) -> list[DeliveryResult]:
        today = self.clock().date()
        results: list[DeliveryResult] = []
        for milestone in self.container.milestones.list():
            if milestone.status is MilestoneStatus.COMPLETED or not milestone.due_date:
                continue
            project = self.container.projects.get(milestone.project_id)
            if project is None:
                continue
            due = parse_iso(milestone.due_date)
            if due is None:
                continue
            remaining = (due.date() - today).days
            if 0 <= remaining <= days:
                results.extend(self.notify_milestone_due(milestone, project, remaining))
        logger.info("Milestone reminder sweep produced {} deliveries", len(results))
        return results

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def list_for_user(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        unread_only: bool = False,
        notification_type: Optional[str] = None,
    ) -> dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        everything = self.container.notifications.list_for_user(user_id)
        items = everything
        if unread_only:
            items = [n for n in items if not n.read]
        if notification_type:
            items = [n for n in items if n.type.value == notification_type]
        start = (page - 1) * limit
        return {
            "notifications": [n.to_dict() for n in items[start:start + limit]],
            "total": len(items),
            "unread_count": sum(1 for n in everything if not n.read),
            "page": page,
            "limit": limit,
            "pages": (len(items) + limit - 1) // limit,
        }

    def unread_count(self, user_id: str) -> int:
        return sum(1 for n in self.container.notifications.list_for_user(user_id) if not n.read)

    def _owned(self, notification_id: str, user_id: str) -> Notification:
        notification = self.container.notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFound("Notification", notification_id)
        return notification

    def mark_as_read(self, notification_id: str, user_id: str) -> Notification:
        self._owned(notification_id, user_id)

        def _read(n: Notification) -> None:
            if not n.read:
                n.read = True
                n.read_at = now_iso()

        return self.container.notifications.update(notification_id, _read)

    def mark_all_as_read(self, user_id: str) -> int:
        return self.container.notifications.mark_all_read(user_id, now_iso())

    def delete(self, notification_id: str, user_id: str) -> None:
        self._owned(notification_id, user_id)
        self.container.notifications.delete(notification_id)

    def cleanup_old_notifications(self, days: int = READ_NOTIFICATION_RETENTION_DAYS) -> int:
        cutoff = (self.clock() - timedelta(days=days)).isoformat()
        removed = self.container.notifications.delete_read_before(cutoff)
        logger.info("Removed {} read notifications older than {} days", removed, days)
        return removed

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preferences(self, user_id: str) -> NotificationPreference:
        return self.container.preferences.get_or_create(user_id)

    def update_preferences(self, user_id: str, changes: dict[str, Any]) -> NotificationPreference:
        pref = self.container.preferences.get_or_create(user_id)
        for key, value in changes.items():
            if value is None:
                continue
            caster = _PREFERENCE_FIELDS.get(key)
            if caster is None:
                raise InvalidOperation(f"Unknown preference field: {key}")
            setattr(pref, key, caster(value))
        if pref.digest_frequency not in {"daily", "weekly"}:
            raise InvalidOperation("digest_frequency must be 'daily' or 'weekly'")
        return self.container.preferences.upsert(pref)

    def update_setting(self, user_id: str, notification_type: str, channels: dict[str, Any]) -> NotificationPreference:
        if notification_type not in {t.value for t in NotificationType}:
            raise InvalidOperation(f"Unknown notification type: {notification_type}")
        pref = self.container.preferences.get_or_create(user_id)
        pref.settings[notification_type] = NotificationSetting(
            email=bool(channels.get("email", True)),
            in_app=bool(channels.get("in_app", True)),
            push=bool(channels.get("push", True)),
        )
        return self.container.preferences.upsert(pref)

    def toggle_project_mute(self, user_id: str, project_id: str) -> bool:
        """Flip the mute state of *project_id*; return True when now muted."""
        pref = self.container.preferences.get_or_create(user_id)
        if project_id in pref.muted_projects:
            pref.muted_projects = [p for p in pref.muted_projects if p != project_id]
            muted = False
        else:
            pref.muted_projects.append(project_id)
            muted = True
        self.container.preferences.upsert(pref)
        return muted
