"""Daily uptime accounting split at local midnight."""
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterator, Optional, Tuple

Bucket = Tuple[int, date]  # (device_id, local calendar day)


def to_local(utc_naive: datetime, tz: Optional[tzinfo] = None) -> datetime:
    aware = utc_naive.replace(tzinfo=timezone.utc)
    return aware.astimezone(tz) if tz is not None else aware.astimezone()


def split_by_local_day(start_utc: datetime, end_utc: datetime,
                       tz: Optional[tzinfo] = None) -> Iterator[Tuple[date, int]]:
    """Yield ``(local_day, seconds)`` for each calendar day ``[start, end)`` touches.

    Inputs are naive UTC. Midnight is computed in ``tz`` (host zone when
    None), so DST days get the seconds that actually fell on them.
    """
    if end_utc <= start_utc:
        return

    start_ts = start_utc.replace(tzinfo=timezone.utc)
    end_ts = end_utc.replace(tzinfo=timezone.utc)
    cursor = start_ts
    while cursor < end_ts:
        local = cursor.astimezone(tz) if tz is not None else cursor.astimezone()
        day = local.date()
        next_midnight = datetime.combine(day + timedelta(days=1), time.min)
        if tz is not None:
            boundary = next_midnight.replace(tzinfo=tz).astimezone(timezone.utc)
        else:
            boundary = next_midnight.astimezone().astimezone(timezone.utc)

        chunk_end = min(boundary, end_ts)
        seconds = int((chunk_end - cursor).total_seconds())
        if seconds > 0:
            yield day, seconds
        if chunk_end <= cursor:
            break
        cursor = chunk_end


class UptimeAccumulator:
    """Collects per-(device, day) online/observed seconds for one pass."""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz
        self.buckets: Dict[Bucket, Tuple[int, int]] = {}

    def add(self, device_id: int, start_utc: datetime, end_utc: datetime, was_online: bool):
        for day, seconds in split_by_local_day(start_utc, end_utc, self.tz):
            online, observed = self.buckets.get((device_id, day), (0, 0))
            if was_online:
                online += seconds
            self.buckets[(device_id, day)] = (online, observed + seconds)

    def __len__(self):
        return len(self.buckets)

    def items(self):
        return self.buckets.items()


def local_cutoff_date(now_utc: datetime, days: int, tz: Optional[tzinfo] = None) -> date:
    return to_local(now_utc, tz).date() - timedelta(days=days)
