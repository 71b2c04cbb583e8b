from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import WebSocket
from loguru import logger


CHANNELS = {
    "tasks",
    "milestones",
    "phases",
    "notifications",
    "system",
}


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    project_ids: set[str] = field(default_factory=set)
    user_id: Optional[str] = None


def _ids(message: dict[str, Any], plural: str, single: str) -> set[str]:
    values = {str(v).strip() for v in message.get(plural, []) if str(v).strip()}
    one = str(message.get(single) or "").strip()
    if one:
        values.add(one)
    return values


class WebSocketHub:
    """Fan out real-time events to connected dashboard clients.

    Project events go to clients subscribed to the event's channel (and
    project, when the client narrowed its subscription).  Per-user events
    carry a ``user_id`` and only reach sockets bound to that user.
    """

    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    async def _reply(self, websocket: WebSocket, event_type: str, client: _WsClient) -> None:
        await websocket.send_text(
            json.dumps(
                {
                    "channel": "system",
                    "type": event_type,
                    "payload": {
                        "channels": sorted(client.channels),
                        "project_ids": sorted(client.project_ids),
                        "user_id": client.user_id,
                    },
                }
            )
        )

    async def handle_connection(self, websocket: WebSocket, user_id: Optional[str] = None) -> None:
        # Remember the active event loop so worker threads can publish safely.
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket, user_id=user_id)
        if user_id:
            client.channels.add("notifications")
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await self._reply(websocket, "connected", client)
            while True:
                raw = await websocket.receive_text()
                message = json.loads(raw)
                action = message.get("action")
                channels = set(message.get("channels", []))
                project_ids = _ids(message, "project_ids", "project_id")
                if action == "subscribe":
                    client.channels |= channels & CHANNELS
                    client.project_ids |= project_ids
                    await self._reply(websocket, "subscribed", client)
                elif action == "unsubscribe":
                    client.channels -= channels
                    client.project_ids -= project_ids
                    await self._reply(websocket, "unsubscribed", client)
                elif action == "ping":
                    await websocket.send_text(json.dumps({"channel": "system", "type": "pong", "payload": {}}))
        except Exception as exc:
            logger.debug("WebSocket client {} disconnected: {}", cid, exc)
        finally:
            self._clients.pop(cid, None)

    def _accepts(self, client: _WsClient, event: dict[str, Any]) -> bool:
        channel = event.get("channel")
        if channel == "system":
            return True
        if channel not in client.channels:
            return False
        target_user = event.get("user_id")
        if target_user is not None:
            return client.user_id == target_user
        if client.project_ids:
            event_project_id = str(event.get("project_id") or "").strip()
            return bool(event_project_id) and event_project_id in client.project_ids
        return True

    async def publish(self, event: dict[str, Any]) -> None:
        self._counter += 1
        payload = json.dumps({**event, "seq": self._counter})
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if not self._accepts(client, event):
                continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        try:
            loop = asyncio.get_running_loop()
            self.attach_loop(loop)
            loop.create_task(self.publish(event))
        except RuntimeError:
            # No loop and no listeners: nothing to deliver to.
            pass

    def emit_to_user(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget delivery to the ``user:<id>`` room."""
        self.publish_sync(
            {
                "channel": "notifications",
                "type": event_type,
                "user_id": user_id,
                "payload": payload,
            }
        )


hub = WebSocketHub()
