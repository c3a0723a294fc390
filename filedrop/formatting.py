"""Human readable sizes and durations for log lines."""
from typing import Optional

_SIZE_UNITS = (
    (1000 ** 5, "PB"),
    (1000 ** 4, "TB"),
    (1000 ** 3, "GB"),
    (1000 ** 2, "MB"),
    (1000, "KB"),
)


def format_size(n: float) -> str:
    """Format a byte count with decimal units, switching unit at half of it.

    >>> format_size(1500)
    '1.50 KB'
    >>> format_size(400)
    '400 B'
    """
    for factor, unit in _SIZE_UNITS:
        if n > 0.5 * factor:
            return f"{n / factor:.2f} {unit}"
    return f"{int(n)} B"


def format_rate(bytes_per_second: float) -> str:
    return f"{format_size(bytes_per_second)}/s"


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds as ``1h 2m 3s 450ms``; ``None`` renders as ``?``."""
    if seconds is None:
        return "?"
    ms = int(round(seconds * 1000))
    if ms <= 0:
        return "0ms"

    parts = []
    hours, ms = divmod(ms, 3_600_000)
    minutes, ms = divmod(ms, 60_000)
    secs, ms = divmod(ms, 1000)
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    if ms:
        parts.append(f"{ms}ms")
    return " ".join(parts)
