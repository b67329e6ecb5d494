"""Display formatting for durations, timestamps and memory sizes."""

from datetime import datetime, timezone

from ..models import NOT_AVAILABLE

SECONDS_PER_HOUR = 3600
MINUTES_PER_DAY = 1440
MB_PER_GB = 1024


def format_elapsed(total_seconds: int) -> str:
    """Format seconds as ``H:MM:SS``.

    Hours are not padded and may exceed 24.

    Examples:
        8 -> "0:00:08"
        3661 -> "1:01:01"
    """
    total_seconds = max(0, int(total_seconds))
    hours, remainder = divmod(total_seconds, SECONDS_PER_HOUR)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def format_time_limit(minutes: int) -> str:
    """Format a time limit given in minutes.

    Examples:
        0 -> "N/A"
        720 -> "12:00:00"
        1500 -> "1-01:00:00"
    """
    minutes = int(minutes)
    if minutes <= 0:
        return NOT_AVAILABLE
    days, remainder = divmod(minutes, MINUTES_PER_DAY)
    hours, mins = divmod(remainder, 60)
    if days > 0:
        return f"{days}-{hours:02d}:{mins:02d}:00"
    return f"{hours:02d}:{mins:02d}:00"


def epoch_to_iso(epoch: int) -> str:
    """Convert epoch seconds to a UTC ISO-8601 string, "N/A" when unset."""
    if not epoch or epoch <= 0:
        return NOT_AVAILABLE
    moment = datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


def format_mb(mb: float) -> str:
    """Format megabytes, switching to GB from 1024 MB upwards.

    Examples:
        512 -> "512 MB"
        2048 -> "2.0 GB"
    """
    if mb >= MB_PER_GB:
        return f"{mb / MB_PER_GB:.1f} GB"
    return f"{mb:.0f} MB"
