from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Time source shared by every expiry comparison."""

    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


def epoch_seconds(dt: datetime) -> int:
    return int(dt.timestamp())


__all__ = ["Clock", "SystemClock", "epoch_seconds"]
