"""Formatting helpers shared by the job processors and the feed builder."""
import os
import re
from urllib.parse import urlparse, unquote


def format_bytes(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.0f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def scale_progress(percent: float, start: int, end: int) -> int:
    """Map an adapter's own 0-100 progress linearly onto a job phase range."""
    percent = max(0.0, min(100.0, float(percent)))
    return round(start + (percent / 100) * (end - start))


def format_itunes_duration(seconds: int) -> str:
    seconds = int(seconds or 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def title_from_filename(filename: str) -> str:
    """Turn 'my_great-episode.mp3' into 'my great episode'."""
    name = os.path.splitext(os.path.basename(filename))[0]
    name = re.sub(r"[_-]+", " ", name)
    return re.sub(r"\s+", " ", name).strip()


def title_from_url(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError:
        return "Untitled"

    filename = os.path.basename(parsed.path)
    if filename:
        return title_from_filename(unquote(filename))
    return parsed.hostname or "Untitled"


def error_message(exc: BaseException) -> str:
    """Message stored on a failed job."""
    message = str(exc).strip()
    return message or "Unknown error"
