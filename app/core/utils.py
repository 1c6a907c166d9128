import random
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Sequence, Tuple

def to_naive_utc(value: datetime) -> datetime:
    # Stored datetimes are naive UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def is_business_day(day: date) -> bool:
    # Python weekday(): 0=Monday..6=Sunday
    return day.weekday() < 5

def business_days(start: date, horizon_days: int) -> Iterator[date]:
    for offset in range(horizon_days):
        day = start + timedelta(days=offset)
        if is_business_day(day):
            yield day

def slot_start_times(start: date, horizon_days: int, daily_times: Sequence[time]) -> Iterator[datetime]:
    for day in business_days(start, horizon_days):
        for slot_time in sorted(daily_times):
            yield datetime.combine(day, slot_time.replace(tzinfo=None))

def pick_fee(fee_range: Tuple[float, float], rng: Optional[random.Random] = None) -> float:
    low, high = fee_range
    if low == high:
        return float(low)
    rng = rng or random.Random()
    return round(rng.uniform(low, high), 2)
