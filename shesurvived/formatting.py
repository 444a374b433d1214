from datetime import datetime
from typing import Optional

from shesurvived.repository import parse_timestamp, utc_now

CHUNK_SECONDS = 5


def format_elapsed(seconds: int) -> str:
    """MM:SS"""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def time_ago(timestamp: str, now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    minutes = int((now - parse_timestamp(timestamp)).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes == 1:
        return "1 minute ago"
    if minutes < 60:
        return f"{minutes} minutes ago"
    hours = minutes // 60
    if hours == 1:
        return "1 hour ago"
    return f"{hours} hours ago"


def latest_chunk_label(timestamp: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    if not timestamp:
        return None
    now = now or utc_now()
    seconds = int((now - parse_timestamp(timestamp)).total_seconds())
    if seconds < 5:
        return "Just now"
    if seconds < 60:
        return f"{seconds} seconds ago"
    minutes = seconds // 60
    return f"{minutes} minute{'s' if minutes != 1 else ''} ago"


def recording_duration(chunk_count: int) -> int:
    return chunk_count * CHUNK_SECONDS


def seek_chunk(position: float, chunk_count: int) -> tuple:
    """Map a 0..1 seek position to (chunk index, progress within the chunk)."""
    if chunk_count <= 0:
        return 0, 0.0
    position = min(max(position, 0.0), 1.0)
    target = position * recording_duration(chunk_count)
    index = min(int(target // CHUNK_SECONDS), chunk_count - 1)
    progress = (target % CHUNK_SECONDS) / CHUNK_SECONDS
    if index == chunk_count - 1 and position >= 1.0:
        progress = 1.0
    return index, progress
