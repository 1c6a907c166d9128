from datetime import date, datetime, time, timedelta
from uuid import uuid4

import pytest

from app.core.exceptions import InvalidTransition, NotFound, SlotUnavailable, ValidationError
from app.db.models import ActorRole, SlotStatus


@pytest.mark.asyncio
async def test_generate_skips_weekends_and_past_times(slots, provider_id, clock):
    now = clock.now()
    # Wed 7 Jan 2026 through Tue 13 Jan: the 08:00 slot today is already past
    created = await slots.generate(provider_id, now.date(), 7, [time(7, 30), time(9, 0)])

    days = {slot.start_time.date() for slot in created}
    assert date(2026, 1, 10) not in days
    assert date(2026, 1, 11) not in days
    assert all(slot.start_time > now for slot in created)
    # 5 business days * 2 times, minus today's 07:30
    assert len(created) == 9
    assert all(slot.is_available and not slot.is_booked for slot in created)


@pytest.mark.asyncio
async def test_generate_draws_fee_from_range(slots, provider_id):
    created = await slots.generate(provider_id, date(2026, 1, 8), 1, [time(9, 0), time(10, 0)], fee_range=(40, 60))
    assert all(40 <= slot.fee <= 60 for slot in created)


@pytest.mark.asyncio
async def test_generate_rejects_bad_duration(slots, provider_id):
    with pytest.raises(ValidationError):
        await slots.generate(provider_id, date(2026, 1, 8), 1, [time(9, 0)], default_duration=5)


@pytest.mark.asyncio
async def test_create_rejects_duplicates_and_past(slots, provider_id, clock):
    start = datetime(2026, 1, 8, 11, 0)
    await slots.create(provider_id, start)

    with pytest.raises(ValidationError):
        await slots.create(provider_id, start)
    with pytest.raises(ValidationError):
        await slots.create(provider_id, clock.now() - timedelta(hours=1))
    with pytest.raises(ValidationError):
        await slots.create(provider_id, datetime(2026, 1, 8, 12, 0), telemedicine_link="zoom-room-7")


@pytest.mark.asyncio
async def test_find_bookable_is_ordered_and_paged(slots, provider_id):
    # page_size is 3 in the fixture, so this spans several pages
    await slots.generate(provider_id, date(2026, 1, 8), 2, [time(9, 0), time(11, 0), time(13, 0), time(15, 0)])

    found = await slots.find_bookable(provider_id).all()
    starts = [slot.start_time for slot in found]
    assert len(found) == 8
    assert starts == sorted(starts)


@pytest.mark.asyncio
async def test_find_bookable_skips_booked_and_restarts(slots, day_slots, provider_id, patient_id):
    bookable = slots.find_bookable(provider_id)
    assert len(await bookable.all()) == 2

    await slots.claim(day_slots[0].id, patient_id, uuid4())

    # Iterating again reflects the new state
    remaining = await bookable.all()
    assert [slot.id for slot in remaining] == [day_slots[1].id]


@pytest.mark.asyncio
async def test_find_bookable_window(slots, day_slots, provider_id, clock):
    morning = await slots.find_bookable(
        provider_id, day_slots[0].start_time, day_slots[0].start_time + timedelta(hours=1)
    ).all()
    assert [slot.id for slot in morning] == [day_slots[0].id]

    with pytest.raises(ValidationError):
        slots.find_bookable(provider_id, clock.now() + timedelta(days=2), clock.now() + timedelta(days=1))


@pytest.mark.asyncio
async def test_find_bookable_hides_past_slots(slots, day_slots, provider_id, clock):
    clock.advance(days=1, hours=2)  # 10:00 on the slots' day
    found = await slots.find_bookable(provider_id).all()
    assert [slot.id for slot in found] == [day_slots[1].id]


@pytest.mark.asyncio
async def test_claim_sets_booking_refs(slots, day_slots, patient_id):
    appointment_id = uuid4()
    slot = await slots.claim(day_slots[0].id, patient_id, appointment_id)

    assert slot.is_booked is True
    assert slot.is_available is False
    assert slot.patient_id == patient_id
    assert slot.appointment_id == appointment_id


@pytest.mark.asyncio
async def test_claim_twice_fails(slots, day_slots):
    await slots.claim(day_slots[0].id, uuid4(), uuid4())
    with pytest.raises(SlotUnavailable):
        await slots.claim(day_slots[0].id, uuid4(), uuid4())


@pytest.mark.asyncio
async def test_claim_past_or_inactive_slot_fails(slots, day_slots, clock):
    await slots.set_status(day_slots[1].id, SlotStatus.CANCELLED)
    with pytest.raises(SlotUnavailable):
        await slots.claim(day_slots[1].id, uuid4(), uuid4())

    clock.advance(days=2)
    with pytest.raises(SlotUnavailable):
        await slots.claim(day_slots[0].id, uuid4(), uuid4())


@pytest.mark.asyncio
async def test_claim_unknown_slot_is_not_found(slots):
    with pytest.raises(NotFound):
        await slots.claim(uuid4(), uuid4(), uuid4())


@pytest.mark.asyncio
async def test_release_clears_refs(slots, day_slots, patient_id):
    appointment_id = uuid4()
    await slots.claim(day_slots[0].id, patient_id, appointment_id)

    slot = await slots.release(
        day_slots[0].id, ActorRole.PATIENT, reason="Change of plans", cancellation=True, appointment_id=appointment_id
    )
    assert slot.is_booked is False
    assert slot.is_available is True
    assert slot.patient_id is None
    assert slot.appointment_id is None
    assert slot.cancelled_by == "patient"
    assert slot.cancellation_reason == "Change of plans"


@pytest.mark.asyncio
async def test_release_unbooked_or_foreign_slot_fails(slots, day_slots):
    with pytest.raises(InvalidTransition):
        await slots.release(day_slots[0].id, ActorRole.PROVIDER)

    await slots.claim(day_slots[0].id, uuid4(), uuid4())
    with pytest.raises(InvalidTransition):
        await slots.release(day_slots[0].id, ActorRole.SYSTEM, appointment_id=uuid4())


@pytest.mark.asyncio
async def test_delete_booked_slot_fails(slots, day_slots):
    await slots.claim(day_slots[0].id, uuid4(), uuid4())
    with pytest.raises(InvalidTransition):
        await slots.delete(day_slots[0].id)


@pytest.mark.asyncio
async def test_delete_free_slot(slots, day_slots):
    await slots.delete(day_slots[1].id)
    with pytest.raises(NotFound):
        await slots.get(day_slots[1].id)


@pytest.mark.asyncio
async def test_delete_slot_referenced_by_live_appointment_fails(slots, booking, day_slots, provider_id, patient_id):
    appointment = await booking.book(provider_id, patient_id, day_slots[0].id)

    # Releasing alone does not make the slot deletable
    await slots.release(day_slots[0].id, ActorRole.ADMIN, appointment_id=appointment.id)
    with pytest.raises(InvalidTransition):
        await slots.delete(day_slots[0].id)


def test_store_requires_reference_check(session_factory, clock):
    from app.services.slot_store import SlotStore

    with pytest.raises(TypeError):
        SlotStore(session_factory, clock)


@pytest.mark.asyncio
async def test_update_free_slot(slots, day_slots, clock):
    new_start = datetime.combine((clock.now() + timedelta(days=1)).date(), time(11, 0))

    updated = await slots.update(
        day_slots[0].id,
        start_time=new_start,
        duration_minutes=45,
        fee=80,
        consultation_mode="telemedicine",
        telemedicine_link="https://meet.example.org/room",
        notes="Bring reports",
    )

    assert updated.start_time == new_start
    assert updated.duration_minutes == 45
    assert updated.fee == 80
    assert updated.consultation_mode == "telemedicine"
    assert updated.telemedicine_link == "https://meet.example.org/room"
    assert updated.notes == "Bring reports"
    assert updated.requirements is None


@pytest.mark.asyncio
async def test_update_validation(slots, day_slots, clock):
    slot = day_slots[0]
    with pytest.raises(ValidationError):
        await slots.update(slot.id)
    with pytest.raises(ValidationError):
        await slots.update(slot.id, duration_minutes=1)
    with pytest.raises(ValidationError):
        await slots.update(slot.id, fee=-5)
    with pytest.raises(ValidationError):
        await slots.update(slot.id, telemedicine_link="meet.example.org")
    with pytest.raises(ValidationError):
        await slots.update(slot.id, start_time=clock.now() - timedelta(hours=1))
    with pytest.raises(ValidationError):
        await slots.update(slot.id, start_time=day_slots[1].start_time)

    # Moving a slot onto its own time is not a conflict
    same = await slots.update(slot.id, start_time=slot.start_time, notes="Same time")
    assert same.notes == "Same time"


@pytest.mark.asyncio
async def test_update_booked_slot_fails(slots, day_slots):
    await slots.claim(day_slots[0].id, uuid4(), uuid4())
    with pytest.raises(InvalidTransition):
        await slots.update(day_slots[0].id, fee=10)
    assert (await slots.get(day_slots[0].id)).fee == 50


@pytest.mark.asyncio
async def test_update_loses_to_concurrent_claim(slots, day_slots, monkeypatch):
    real_reference_check = slots.is_referenced

    async def claim_meanwhile(slot_id):
        referenced = await real_reference_check(slot_id)
        await slots.claim(slot_id, uuid4(), uuid4())
        return referenced

    monkeypatch.setattr(slots, "is_referenced", claim_meanwhile)

    with pytest.raises(InvalidTransition):
        await slots.update(day_slots[0].id, fee=10)
    stored = await slots.get(day_slots[0].id)
    assert stored.is_booked is True
    assert stored.fee == 50


@pytest.mark.asyncio
async def test_update_unknown_slot_is_not_found(slots):
    with pytest.raises(NotFound):
        await slots.update(uuid4(), fee=10)


@pytest.mark.asyncio
async def test_retire_deletes_only_the_holders_slot(slots, day_slots, patient_id):
    holder = uuid4()
    await slots.claim(day_slots[0].id, patient_id, holder)

    assert await slots.retire(day_slots[0].id, uuid4()) is False
    assert (await slots.get(day_slots[0].id)).appointment_id == holder

    assert await slots.retire(day_slots[1].id, holder) is False
    assert (await slots.get(day_slots[1].id)).is_booked is False

    assert await slots.retire(day_slots[0].id, holder) is True
    with pytest.raises(NotFound):
        await slots.get(day_slots[0].id)


@pytest.mark.asyncio
async def test_delete_unbooked_keeps_booked_and_referenced(slots, booking, provider_id, patient_id, clock):
    tomorrow = (clock.now() + timedelta(days=1)).date()
    created = await slots.generate(provider_id, tomorrow, 1, [time(9, 0), time(10, 0), time(11, 0), time(12, 0)])
    created = sorted(created, key=lambda s: s.start_time)
    other_provider = await slots.create(uuid4(), created[0].start_time)

    await booking.book(provider_id, patient_id, created[0].id)
    released = await booking.book(provider_id, uuid4(), created[1].id)
    await slots.release(created[1].id, ActorRole.ADMIN, appointment_id=released.id)

    assert await slots.delete_unbooked(provider_id) == 2

    assert (await slots.get(created[0].id)).is_booked is True
    assert (await slots.get(created[1].id)).is_booked is False
    for slot in created[2:]:
        with pytest.raises(NotFound):
            await slots.get(slot.id)
    assert (await slots.get(other_provider.id)).is_booked is False
    assert await slots.delete_unbooked(provider_id) == 0
