"""Formatting helpers."""

from typing import Optional


def format_duration(seconds: Optional[float]) -> str:
    """1h 2m 3s / 2m 3s / 3s"""
    if not seconds:
        return "0s"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None:
        return "Calculating..."
    return f"~{format_duration(seconds)} remaining"
