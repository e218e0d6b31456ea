from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union


MODE_FULL = "full"
MODE_RANGE = "range"
MODE_INCREMENTAL = "incremental"

DEFAULT_LOOKBACK = timedelta(minutes=60)
DEFAULT_LOOKBACK_DAYS = 90

DateLike = Union[date, datetime, str, None]


class InvalidSyncWindow(ValueError):
    pass


@dataclass(frozen=True)
class SyncWindow:
    mode: str
    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_full(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, d: date) -> bool:
        if self.is_full:
            return True
        return self.start <= d <= self.end

    def as_dict(self) -> dict:
        return {
            "mode": self.mode,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


def _as_date(v: DateLike, name: str) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v).strip()[:10])
    except ValueError:
        raise InvalidSyncWindow(f"invalid {name}: {v!r}")


def resolve_sync_window(start_date: DateLike = None, end_date: DateLike = None) -> SyncWindow:
    """
    No bounds: full history. Both bounds: inclusive range.
    A single bound or a reversed range is rejected before any database work.
    """
    start = _as_date(start_date, "start_date")
    end = _as_date(end_date, "end_date")
    if start is None and end is None:
        return SyncWindow(MODE_FULL)
    if start is None or end is None:
        raise InvalidSyncWindow("start_date and end_date must be provided together")
    if end < start:
        raise InvalidSyncWindow(f"end_date {end.isoformat()} is before start_date {start.isoformat()}")
    return SyncWindow(MODE_RANGE, start, end)


def incremental_window(
    last_synced_at: Optional[datetime],
    now: datetime,
    *,
    lookback: timedelta = DEFAULT_LOOKBACK,
    default_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> SyncWindow:
    # No checkpoint yet: bounded backfill instead of full history.
    if last_synced_at is None:
        start = (now - timedelta(days=default_lookback_days)).date()
    else:
        start = (last_synced_at - lookback).date()
    end = now.date()
    if start > end:
        # Checkpoint in the future (clock skew): still reconcile today.
        start = end
    return SyncWindow(MODE_INCREMENTAL, start, end)
