"""Service layer wiring repositories, domain rules and notifications together."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import Settings, load_settings
from ..events.bus import EventBus
from ..events.ws import WebSocketHub
from ..storage.container import Container
from .email import EmailTransport, build_email_transport
from .milestones import MilestoneService
from .notifications import NotificationService
from .phases import PhaseService
from .push import PushSink
from .tasks import TaskService


@dataclass
class Services:
    settings: Settings
    container: Container
    bus: EventBus
    tasks: TaskService
    milestones: MilestoneService
    phases: PhaseService
    notifications: NotificationService


def build_services(
    data_dir: Path,
    *,
    settings: Optional[Settings] = None,
    hub: Optional[WebSocketHub] = None,
    email: Optional[EmailTransport] = None,
    push: Optional[PushSink] = None,
) -> Services:
    container = Container(data_dir)
    settings = settings or load_settings(container.data_dir)
    bus = EventBus(container.events, hub)
    notifications = NotificationService(
        container,
        bus,
        email=email or build_email_transport(settings.smtp),
        push=push,
        settings=settings,
    )
    milestones = MilestoneService(container, bus)
    tasks = TaskService(container, bus, notifications=notifications, milestones=milestones)
    phases = PhaseService(container, bus, tasks)
    return Services(
        settings=settings,
        container=container,
        bus=bus,
        tasks=tasks,
        milestones=milestones,
        phases=phases,
        notifications=notifications,
    )


__all__ = [
    "Services",
    "build_services",
    "TaskService",
    "MilestoneService",
    "PhaseService",
    "NotificationService",
]
