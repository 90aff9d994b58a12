"""
Utility functions for trackmaster.

Usage:
    from trackmaster.utils import ensure_directory, format_duration, parse_duration
"""

from pathlib import Path


def ensure_directory(path: Path) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Returns:
        The same path (for chaining).

    Raises:
        OSError: If directory cannot be created (permissions, etc.)

    Example:
        work_dir = ensure_directory(config.output.work_directory)
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Fractions of a second are dropped.

    Examples:
        format_duration(225)     # "3:45"
        format_duration(3750.4)  # "1:02:30"
        format_duration(45)      # "0:45"
    """
    seconds = max(0, int(seconds))
    if seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{minutes}:{secs:02d}"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours}:{minutes:02d}:{secs:02d}"


def parse_duration(duration_str: str) -> int:
    """
    Parse a duration string to seconds.

    Accepts plain seconds, "M:SS" or "H:MM:SS".

    Examples:
        parse_duration("90")       # 90
        parse_duration("3:45")     # 225
        parse_duration("1:02:30")  # 3750

    Raises:
        ValueError: If the string is not a valid duration.
    """
    parts = [int(p) for p in duration_str.strip().split(":")]
    if any(p < 0 for p in parts):
        raise ValueError(f"Negative duration: {duration_str}")

    if len(parts) == 1:
        return parts[0]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    raise ValueError(f"Invalid duration: {duration_str}")
