# domain/clock.py
from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_tz(name: str) -> tzinfo:
    """IANA zone by name; used for midnight / week boundaries."""
    return ZoneInfo(name)
