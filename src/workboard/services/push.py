from __future__ import annotations

from typing import Any

from loguru import logger


class PushSink:
    """Destination for push notifications. The default sink drops them."""

    def push(self, user_id: str, title: str, message: str, data: dict[str, Any]) -> bool:
        logger.debug("Push delivery not configured, dropping push for {}: {}", user_id, title)
        return False
