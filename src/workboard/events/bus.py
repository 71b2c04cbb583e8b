from __future__ import annotations

from typing import Any, Optional

from ..storage.interfaces import EventRepository
from .ws import WebSocketHub, hub as default_hub


class EventBus:
    """Record domain events and broadcast them to live dashboard clients."""

    def __init__(self, repo: EventRepository, hub: Optional[WebSocketHub] = None) -> None:
        self._repo = repo
        self.hub = hub or default_hub

    def emit(
        self,
        *,
        channel: str,
        event_type: str,
        entity_id: str,
        payload: dict[str, Any],
        project_id: Optional[str] = None,
    ) -> dict[str, Any]:
        event = self._repo.append(
            channel=channel,
            event_type=event_type,
            entity_id=entity_id,
            payload=payload,
            project_id=project_id,
        )
        self.hub.publish_sync(event)
        return event

    def emit_to_user(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.hub.emit_to_user(user_id, event_type, payload)
