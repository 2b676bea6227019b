# utils/time.py
import time

HOUR_MS = 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def floor_to_hour(ts_ms: int) -> int:
    return (ts_ms // HOUR_MS) * HOUR_MS


def format_elapsed_hhmm(from_ms: int, to_ms: int) -> str:
    """Elapsed time as ``h:mm`` (hours are not wrapped at 24)."""
    total_min = max(0, to_ms - from_ms) // 60_000
    return f"{total_min // 60}:{total_min % 60:02d}"
