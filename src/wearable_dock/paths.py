import datetime
import os
from pathlib import Path

from wearable_dock.errors import PathTooLongError

PATH_MAX = 4096
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def join(base, *parts, max_length: int = PATH_MAX) -> Path:
    """
    Join *parts* onto *base*.

    Raises PathTooLongError instead of silently producing a path the kernel
    would reject (or a truncated one) when the result reaches *max_length*.
    """
    joined = os.path.join(os.fspath(base), *(os.fspath(p) for p in parts))
    if len(os.fsencode(joined)) >= max_length:
        raise PathTooLongError(joined, max_length)
    return Path(joined)


def timestamp_name(now: datetime.datetime | None = None, suffix: str = "") -> str:
    """Local wall-clock name like ``20250131_142500`` (plus *suffix*)."""
    now = now or datetime.datetime.now()
    return now.strftime(TIMESTAMP_FORMAT) + suffix
