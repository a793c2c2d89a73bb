from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware UTC wall time."""
    return datetime.now(timezone.utc)


__all__ = ["Clock", "utc_now"]
