"""
Timer utility functions.

Duration parsing, epoch-millisecond clock helpers and human readable status
formatting for timer endpoints.
"""
import math
import re
import time
from datetime import datetime, timezone

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

MAX_DURATION_DAYS = 3650
MAX_DURATION_MS = MAX_DURATION_DAYS * DAY_MS

_UNIT_MS = {"s": SECOND_MS, "m": MINUTE_MS, "h": HOUR_MS, "d": DAY_MS}
_DURATION_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)(s|m|h|d)$")


class InvalidDurationError(ValueError):
    """Raised when a duration string cannot be parsed."""


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_iso(epoch_ms: int) -> str:
    """Format epoch milliseconds as ISO-8601 UTC, e.g. 2024-01-01T00:00:00.000Z."""
    seconds, millis = divmod(int(epoch_ms), 1000)
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{millis:03d}Z"


def parse_duration(duration: str) -> int:
    """
    Parse a duration string like "15s", "30m", "2h" or "1d" to milliseconds.

    Raises:
        InvalidDurationError: on malformed input or a non-positive value
    """
    if not isinstance(duration, str):
        raise InvalidDurationError("Duration must be a string")

    match = _DURATION_RE.match(duration.strip().lower())
    if not match:
        raise InvalidDurationError(
            "Invalid duration format. Use formats like: 15s, 30m, 2h, 1d"
        )

    value = float(match.group(1))
    if value <= 0:
        raise InvalidDurationError("Duration must be greater than 0")

    milliseconds = value * _UNIT_MS[match.group(2)]
    if not math.isfinite(milliseconds) or milliseconds > MAX_DURATION_MS:
        raise InvalidDurationError(f"Duration must be at most {MAX_DURATION_DAYS} days")

    milliseconds = int(milliseconds)
    if milliseconds <= 0:
        raise InvalidDurationError("Duration must be at least 1 millisecond")
    return milliseconds


def check_duration_ms(milliseconds: int) -> int:
    """Validate a duration already given in milliseconds."""
    if milliseconds <= 0:
        raise InvalidDurationError("Duration must be greater than 0")
    if milliseconds > MAX_DURATION_MS:
        raise InvalidDurationError(f"Duration must be at most {MAX_DURATION_DAYS} days")
    return milliseconds


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit if count == 1 else unit + 's'}"


def format_duration(milliseconds: int) -> str:
    """Convert milliseconds to text like "1 hour 5 minutes" or "30 seconds"."""
    if milliseconds <= 0:
        return "0 seconds"

    total_seconds = milliseconds // 1000
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    parts = []
    if hours > 0:
        parts.append(_plural(hours, "hour"))
    if minutes > 0:
        parts.append(_plural(minutes, "minute"))
    # seconds are only shown below one hour
    if seconds > 0 and hours == 0:
        parts.append(_plural(seconds, "second"))

    if not parts:
        return "0 seconds"
    return " ".join(parts)


def format_relative_time(time_remaining: int, is_expired: bool) -> str:
    if is_expired:
        return f"expired {format_duration(abs(time_remaining))} ago"

    if time_remaining <= MINUTE_MS:
        return f"expires in {_plural(time_remaining // 1000, 'second')}"

    return f"expires in {format_duration(time_remaining)}"


def get_timer_status(time_remaining: int) -> dict:
    """Classify the time left before a deadline."""
    if time_remaining <= 0:
        return {
            "status": "expired",
            "description": "Timer has expired and webhook should have been called",
            "urgency": "high",
        }

    if time_remaining <= MINUTE_MS:
        return {
            "status": "expiring_soon",
            "description": "Timer will expire very soon",
            "urgency": "high",
        }

    if time_remaining <= 5 * MINUTE_MS:
        return {
            "status": "active_urgent",
            "description": "Timer is active and will expire soon",
            "urgency": "medium",
        }

    return {
        "status": "active",
        "description": "Timer is active and running normally",
        "urgency": "low",
    }


def describe_deadline(deadline: int, now: int) -> dict:
    """Remaining-time fields shown next to a timer."""
    time_remaining = deadline - now
    is_expired = time_remaining <= 0
    timer_status = get_timer_status(time_remaining)
    return {
        "deadline_iso": to_iso(deadline),
        "time_remaining": max(0, time_remaining),
        "time_remaining_formatted": format_duration(max(0, time_remaining)),
        "time_description": format_relative_time(time_remaining, is_expired),
        "timer_status": timer_status["status"],
        "status_description": timer_status["description"],
        "urgency": timer_status["urgency"],
        "is_expired": is_expired,
    }


def calculate_timer_stats(timers: list, now: int) -> dict:
    """
    Split timers into running and overdue and summarise them.

    Args:
        timers: TimerRecord list (anything with trip_id and deadline)
        now: epoch milliseconds

    Returns:
        dict with "summary" and "timers" ({"active": [...], "expired": [...]})
        where each timer entry is a (timer, describe_deadline dict) pair.
    """
    described = [(timer, describe_deadline(timer.deadline, now)) for timer in timers]

    active = [entry for entry in described if not entry[1]["is_expired"]]
    expired = [entry for entry in described if entry[1]["is_expired"]]
    urgent = [entry for entry in active if entry[1]["urgency"] in ("high", "medium")]

    next_expiring = min(active, key=lambda entry: entry[0].deadline, default=None)

    return {
        "summary": {
            "total": len(timers),
            "active": len(active),
            "expired": len(expired),
            "urgent": len(urgent),
            "next_expiring": {
                "trip_id": next_expiring[0].trip_id,
                "time_remaining": next_expiring[1]["time_remaining_formatted"],
                "description": next_expiring[1]["time_description"],
            } if next_expiring else None,
        },
        "timers": {
            "active": active,
            "expired": expired,
        },
    }
