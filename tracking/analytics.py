"""Formatting helpers for countdowns, rewards and daily totals."""

from typing import Any, Dict

CURRENCY_SYMBOL = "₨"


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds (truncated to int for display)

    Returns:
        Formatted string like "1 min 30 secs", "45 secs" or "5 mins"

    Examples:
        >>> format_duration(90)
        '1 min 30 secs'
        >>> format_duration(0)
        '0 sec'
    """
    total_seconds = int(seconds) if seconds >= 0 else 0

    mins = total_seconds // 60
    secs = total_seconds % 60

    parts = []
    if mins > 0:
        min_unit = "min" if mins == 1 else "mins"
        parts.append(f"{mins} {min_unit}")
    if secs > 0:
        sec_unit = "sec" if secs == 1 else "secs"
        parts.append(f"{secs} {sec_unit}")

    return " ".join(parts) if parts else "0 sec"


def format_reward(amount: float) -> str:
    """Format a reward amount, e.g. 2.5 -> '₨2.50'."""
    return f"{CURRENCY_SYMBOL}{amount:.2f}"


def format_progress_bar(progress_percent: float, width: int = 30) -> str:
    """
    Render a text progress bar.

    Args:
        progress_percent: 0-100 (clamped).
        width: Number of cells.
    """
    clamped = max(0.0, min(100.0, progress_percent))
    filled = int(width * clamped / 100)
    return "[" + "#" * filled + "-" * (width - filled) + "]"


def summarize_daily_stats(stats: Dict[str, Any]) -> str:
    """One-line summary of a DailyStatsTracker snapshot."""
    ads = int(stats.get("ads_watched", 0))
    unit = "ad" if ads == 1 else "ads"
    return f"Today: {ads} {unit} watched, {format_reward(float(stats.get('earnings', 0.0)))} earned"
