"""
Per-channel delivery preferences: opt-in, severity and type filters,
and quiet hours.
"""
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..exceptions import ConfigurationError
from ..models import ChannelPreferences, Incident, NotificationType, QuietHours


def _minutes(clock: str) -> int:
    hours, minutes = clock.split(":")
    return int(hours) * 60 + int(minutes)


def _zone(name: str):
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"unknown quiet hours timezone '{name}'") from e


def _weekday_sunday_first(moment: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def in_quiet_hours(quiet: Optional[QuietHours], now: datetime) -> bool:
    """
    Whether `now` falls inside the quiet window.

    The day of week is checked first (in the window's timezone), then the
    start/end interval. When start > end the window wraps past midnight.
    """
    if quiet is None or not quiet.enabled:
        return False

    local = now.astimezone(_zone(quiet.timezone))

    if quiet.days and _weekday_sunday_first(local) not in quiet.days:
        return False

    current = local.hour * 60 + local.minute
    start = _minutes(quiet.start_time)
    end = _minutes(quiet.end_time)

    if start <= end:
        return start <= current < end
    return current >= start or current < end


def should_notify(
    preferences: Optional[ChannelPreferences],
    incident: Incident,
    notification_type: NotificationType,
    now: datetime,
) -> Tuple[bool, str]:
    """
    Decide whether a channel receives this event.

    Returns:
        (allowed, reason); reason is empty when allowed
    """
    if preferences is None:
        return True, ""
    if not preferences.opt_in:
        return False, "channel opted out"
    if preferences.severity_filter and incident.severity not in preferences.severity_filter:
        return False, f"severity {incident.severity.value} filtered"
    if (
        preferences.notification_types
        and notification_type != NotificationType.TEST
        and notification_type not in preferences.notification_types
    ):
        return False, f"type {notification_type.value} filtered"
    if in_quiet_hours(preferences.quiet_hours, now):
        return False, "quiet hours"
    return True, ""
