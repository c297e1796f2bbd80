"""
Helper functions for formatting data into human-readable strings.
"""

from datetime import datetime, timezone


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').
    """
    s = int(seconds)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_age(moment: datetime | None, now: datetime | None = None) -> str:
    """Formats how long ago `moment` was (e.g., '3m 5s ago'), or '-' if unset."""
    if moment is None:
        return "-"
    now = now or datetime.now(timezone.utc)
    return f"{format_duration(max(0.0, (now - moment).total_seconds()))} ago"


def truncate(text: str, width: int) -> str:
    """Shortens text to `width` characters, marking the cut with an ellipsis."""
    if len(text) <= width:
        return text
    return text[: max(0, width - 1)] + "…"
