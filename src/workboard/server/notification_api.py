"""Notification inbox, preference and real-time endpoints."""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Query, WebSocket
from pydantic import BaseModel

from ..errors import WorkboardError
from ..events.ws import WebSocketHub
from ..services import Services
from .auth import Identity, current_identity, resolve_identity


class UpdatePreferencesRequest(BaseModel):
    email_enabled: Optional[bool] = None
    in_app_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    digest_enabled: Optional[bool] = None
    digest_frequency: Optional[str] = None
    digest_time: Optional[str] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None


class ChannelSettingRequest(BaseModel):
    email: bool = True
    in_app: bool = True
    push: bool = True


def create_notification_router(get_services: Callable[[], Services], hub: WebSocketHub) -> APIRouter:
    router = APIRouter(tags=["notifications"])

    @router.get("/api/notifications")
    async def list_notifications(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        unread_only: bool = Query(False),
        type: Optional[str] = Query(None),
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        return get_services().notifications.list_for_user(
            identity.user_id, page=page, limit=limit, unread_only=unread_only, notification_type=type
        )

    @router.get("/api/notifications/unread-count")
    async def unread_count(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"count": get_services().notifications.unread_count(identity.user_id)}

    @router.patch("/api/notifications/read-all")
    async def mark_all_read(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"updated": get_services().notifications.mark_all_as_read(identity.user_id)}

    @router.get("/api/notifications/preferences")
    async def get_preferences(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        return {"preferences": get_services().notifications.get_preferences(identity.user_id).to_dict()}

    @router.put("/api/notifications/preferences")
    async def update_preferences(body: UpdatePreferencesRequest, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        pref = get_services().notifications.update_preferences(identity.user_id, body.model_dump(exclude_none=True))
        return {"preferences": pref.to_dict()}

    @router.put("/api/notifications/preferences/settings/{notification_type}")
    async def update_setting(
        notification_type: str,
        body: ChannelSettingRequest,
        identity: Identity = Depends(current_identity),
    ) -> dict[str, Any]:
        pref = get_services().notifications.update_setting(identity.user_id, notification_type, body.model_dump())
        return {"preferences": pref.to_dict()}

    @router.post("/api/notifications/preferences/mute/{project_id}")
    async def toggle_mute(project_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        muted = get_services().notifications.toggle_project_mute(identity.user_id, project_id)
        return {"project_id": project_id, "muted": muted}

    @router.patch("/api/notifications/{notification_id}/read")
    async def mark_read(notification_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        notification = get_services().notifications.mark_as_read(notification_id, identity.user_id)
        return {"notification": notification.to_dict()}

    @router.delete("/api/notifications/{notification_id}")
    async def delete_notification(notification_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
        get_services().notifications.delete(notification_id, identity.user_id)
        return {"deleted": notification_id}

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None, user_id: Optional[str] = None) -> None:
        services = get_services()
        try:
            identity = resolve_identity(
                services.settings,
                services.container.users,
                f"Bearer {token}" if token else None,
                user_id,
            )
        except WorkboardError:
            await websocket.close(code=4401)
            return
        await hub.handle_connection(websocket, user_id=identity.user_id)

    return router
