from datetime import datetime

import pytest
from sqlalchemy import DateTime

from app.db.models import Appointment, Slot


@pytest.mark.parametrize(
    "column",
    [
        Slot.__table__.c.start_time,
        Slot.__table__.c.cancelled_at,
        Slot.__table__.c.created_at,
        Appointment.__table__.c.scheduled_time,
        Appointment.__table__.c.confirmed_at,
        Appointment.__table__.c.updated_at,
    ],
)
def test_datetime_columns_are_naive(column):
    assert isinstance(column.type, DateTime)
    assert column.type.timezone is False


@pytest.mark.asyncio
async def test_naive_times_round_trip(slots, provider_id, clock):
    start = datetime(2026, 1, 9, 9, 30)
    created = await slots.create(provider_id, start)

    stored = await slots.get(created.id)
    assert stored.start_time == start
    assert stored.start_time.tzinfo is None
    assert stored.created_at == clock.now()
