from datetime import time, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import update

from app.db.models import ActorRole, Appointment, Slot


@pytest.mark.asyncio
async def test_clean_store_has_no_violations(integrity, booking, day_slots, provider_id, patient_id):
    await booking.book(provider_id, patient_id, day_slots[0].id)
    report = await integrity.audit()
    assert report.ok
    assert report.checked_slots == 2
    assert report.checked_appointments == 1


@pytest.mark.asyncio
async def test_reports_half_booked_slot(integrity, session_factory, day_slots):
    async with session_factory() as session:
        await session.execute(update(Slot).where(Slot.id == day_slots[0].id).values(is_booked=True))
        await session.commit()

    report = await integrity.audit()
    assert not report.ok
    assert any(str(day_slots[0].id) in v for v in report.violations)


@pytest.mark.asyncio
async def test_reports_two_live_appointments_on_one_slot(integrity, booking, session_factory, day_slots, provider_id):
    first = await booking.book(provider_id, uuid4(), day_slots[0].id)
    second = await booking.book(provider_id, uuid4(), day_slots[1].id)
    async with session_factory() as session:
        await session.execute(
            update(Appointment).where(Appointment.id == second.id).values(slot_id=first.slot_id)
        )
        await session.commit()

    report = await integrity.audit()
    assert any("2 live appointments" in v for v in report.violations)


@pytest.mark.asyncio
async def test_purge_keeps_booked_and_referenced_slots(integrity, slots, booking, clock, provider_id):
    tomorrow = (clock.now() + timedelta(days=1)).date()
    created = sorted(
        await slots.generate(provider_id, tomorrow, 1, [time(9, 0), time(10, 0), time(11, 0)]),
        key=lambda s: s.start_time,
    )
    booked = await booking.book(provider_id, uuid4(), created[0].id)
    released = await booking.book(provider_id, uuid4(), created[1].id)
    await slots.release(created[1].id, ActorRole.ADMIN, appointment_id=released.id)

    clock.advance(days=40)
    deleted = await integrity.purge_stale_slots(retention_days=30)

    assert deleted == 1
    assert (await slots.get(created[0].id)).appointment_id == booked.id
    # Unbooked, but a live appointment still points at it
    assert (await slots.get(created[1].id)).is_booked is False
