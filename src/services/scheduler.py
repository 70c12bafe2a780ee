import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def next_run_time(hour: int = 8, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if run <= now:
        run += timedelta(days=1)
    return run


def is_due(last_run: Optional[datetime], interval: timedelta, now: datetime) -> bool:
    return last_run is None or last_run + interval <= now


def day_window(day: date) -> tuple[datetime, datetime]:
    """[day 00:00, day+1 00:00) in UTC."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`; returns True if the stop event fired."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
