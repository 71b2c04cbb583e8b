"""Per-user channel gating for notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from ..constants import Channel
from .models import NotificationPreference


def local_hhmm(now: datetime, tz_name: Optional[str] = None) -> str:
    """Format *now* as ``HH:MM`` in *tz_name* (server-local when unset)."""
    local = now.astimezone(ZoneInfo(tz_name)) if tz_name else now.astimezone()
    return local.strftime("%H:%M")


def in_quiet_hours(current: str, start: str, end: str) -> bool:
    """True when ``HH:MM`` *current* falls inside the quiet window.

    A window whose start sorts after its end wraps midnight:
    ``[start, 24:00) + [00:00, end)``.  Otherwise it is ``[start, end)``.
    """
    if start > end:
        return current >= start or current < end
    return start <= current < end


def channel_enabled(pref: NotificationPreference, channel: Channel) -> bool:
    if channel is Channel.IN_APP:
        return pref.in_app_enabled
    if channel is Channel.EMAIL:
        return pref.email_enabled
    return pref.push_enabled


def should_notify(
    pref: NotificationPreference,
    notification_type: str,
    channel: Channel,
    current_hhmm: str,
) -> bool:
    """Decide whether *channel* may carry a *notification_type* message.

    Checks run in order: global channel toggle, quiet hours (email and push
    only), then the per-type override which defaults to enabled.
    """
    if not channel_enabled(pref, channel):
        return False
    if channel is not Channel.IN_APP and pref.quiet_hours_enabled:
        if in_quiet_hours(current_hhmm, pref.quiet_hours_start, pref.quiet_hours_end):
            return False
    return pref.setting_for(notification_type).allows(channel.value)
