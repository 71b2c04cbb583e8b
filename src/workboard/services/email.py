"""Outbound email: SMTP transport and per-notification-type templates."""

from __future__ import annotations

import html
import re
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Callable, Optional

from loguru import logger

from ..config import SmtpSettings
from ..constants import NotificationType

_TAG_RE = re.compile(r"<[^>]*>")

_PAGE = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1>{heading}</h1>
    {body}
    <p style="margin: 30px 0;"><a href="{link}">{action}</a></p>
  </div>
</body>
</html>"""


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


def _esc(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))


def _page(heading: str, body: str, link: str, action: str) -> str:
    return _PAGE.format(heading=_esc(heading), body=body, link=_esc(link), action=_esc(action))


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _task_assigned(data: dict[str, Any]) -> RenderedEmail:
    task = data.get("task") or {}
    actor = data.get("actor_name") or "Someone"
    project = data.get("project_name") or "a project"
    body = f"<p><strong>{_esc(actor)}</strong> assigned you a task in <strong>{_esc(project)}</strong>.</p>"
    body += f"<h2>{_esc(task.get('title'))}</h2>"
    if task.get("description"):
        body += f"<p>{_esc(_truncate(str(task['description'])))}</p>"
    if task.get("priority"):
        body += f"<p>Priority: {_esc(task['priority'])}</p>"
    page = _page("New Task Assigned", body, data.get("link") or "", "View Task")
    return RenderedEmail(f"New Task Assigned: {task.get('title', '')}", page, _TAG_RE.sub("", page))


def _deadline_reminder(data: dict[str, Any]) -> RenderedEmail:
    task = data.get("task") or {}
    when = data.get("due_text") or "soon"
    body = f"<p><strong>{_esc(task.get('title'))}</strong> is due {_esc(when)}.</p>"
    body += f"<p><strong>Project:</strong> {_esc(data.get('project_name'))}</p>"
    if task.get("due_date"):
        body += f"<p><strong>Due Date:</strong> {_esc(str(task['due_date'])[:10])}</p>"
    page = _page("Task Deadline Reminder", body, data.get("link") or "", "View Task")
    return RenderedEmail(f"Reminder: {task.get('title', '')} is due {when}", page, _TAG_RE.sub("", page))


def _milestone_due(data: dict[str, Any]) -> RenderedEmail:
    name = data.get("milestone_name") or "A milestone"
    when = data.get("due_text") or "soon"
    body = f"<p>Milestone <strong>{_esc(name)}</strong> is due {_esc(when)}.</p>"
    body += f"<p><strong>Project:</strong> {_esc(data.get('project_name'))}</p>"
    if data.get("due_date"):
        body += f"<p><strong>Due Date:</strong> {_esc(str(data['due_date'])[:10])}</p>"
    page = _page("Milestone Due Soon", body, data.get("link") or "", "View Milestones")
    return RenderedEmail(f"Milestone {name} is due {when}", page, _TAG_RE.sub("", page))


def _mention(data: dict[str, Any]) -> RenderedEmail:
    actor = data.get("actor_name") or "Someone"
    entity_type = data.get("entity_type") or "comment"
    body = f"<p><strong>{_esc(actor)}</strong> mentioned you in a {_esc(entity_type)}:</p>"
    body += f"<p><strong>{_esc(data.get('entity_title'))}</strong></p>"
    body += f"<blockquote>{_esc(_truncate(str(data.get('content') or '')))}</blockquote>"
    page = _page("You Were Mentioned", body, data.get("link") or "", "View")
    return RenderedEmail(f"{actor} mentioned you", page, _TAG_RE.sub("", page))


def _generic(data: dict[str, Any]) -> RenderedEmail:
    title = str(data.get("title") or "Notification")
    body = f"<p>{_esc(data.get('message'))}</p>"
    page = _page(title, body, data.get("link") or "", "Open")
    return RenderedEmail(title, page, _TAG_RE.sub("", page))


TEMPLATES: dict[str, Callable[[dict[str, Any]], RenderedEmail]] = {
    NotificationType.TASK_ASSIGNED.value: _task_assigned,
    NotificationType.DEADLINE_REMINDER.value: _deadline_reminder,
    NotificationType.MILESTONE_DUE.value: _milestone_due,
    NotificationType.MENTION.value: _mention,
}


def render_email(template_kind: str, data: dict[str, Any]) -> RenderedEmail:
    return TEMPLATES.get(template_kind, _generic)(data)


class EmailTransport(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        raise NotImplementedError

    def send_templated_email(self, to: str, template_kind: str, data: dict[str, Any]) -> bool:
        """Render *template_kind* and send it to *to*.

        Returns False when nothing was sent.  Transport errors propagate to
        the caller, which decides how to contain them.
        """
        if not to:
            return False
        rendered = render_email(template_kind, data)
        return self.send(to, rendered.subject, rendered.html, rendered.text)


class NullEmailTransport(EmailTransport):
    """Used when no SMTP host is configured."""

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        logger.debug("Email transport not configured, skipping email to {}: {}", to, subject)
        return False


class SmtpEmailTransport(EmailTransport):
    def __init__(self, settings: SmtpSettings) -> None:
        self.settings = settings

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        cfg = self.settings
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"Workboard <{cfg.from_address}>"
        message["To"] = to
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        with smtplib.SMTP(host=cfg.host, port=cfg.port, timeout=cfg.timeout) as smtp:
            smtp.ehlo()
            if cfg.use_tls:
                smtp.starttls()
                smtp.ehlo()
            if cfg.username and cfg.password:
                smtp.login(cfg.username, cfg.password)
            smtp.send_message(message)
        logger.info("Email sent to {}: {}", to, subject)
        return True


def build_email_transport(settings: Optional[SmtpSettings]) -> EmailTransport:
    if settings is None or not settings.configured:
        return NullEmailTransport()
    return SmtpEmailTransport(settings)
