import random
import re
from datetime import date, datetime, time
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.core.clock import Clock, SystemClock
from app.core.config import settings
from app.core.exceptions import InvalidTransition, NotFound, SlotUnavailable, ValidationError
from app.core.logger import logger
from app.core.utils import pick_fee, slot_start_times, to_naive_utc
from app.db.models import ActorRole, ConsultationMode, Slot, SlotStatus

TELEMEDICINE_LINK = re.compile(r"^https?://.+")

class BookableSlots:
    """Bookable slots of one provider, ordered by start time.

    Rows are fetched page by page while iterating; iterating again re-runs
    the query against the current state of the store.
    """

    def __init__(self, store: "SlotStore", provider_id: UUID, from_time: Optional[datetime], to_time: Optional[datetime]):
        self.store = store
        self.provider_id = provider_id
        self.from_time = from_time
        self.to_time = to_time

    def __aiter__(self) -> AsyncIterator[Slot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Slot]:
        now = self.store.clock.now()
        lower = max(self.from_time, now) if self.from_time else now
        page_size = self.store.page_size
        last: Optional[Slot] = None

        while True:
            stmt = select(Slot).where(
                Slot.provider_id == self.provider_id,
                Slot.status == SlotStatus.ACTIVE.value,
                Slot.is_available == True,
                Slot.is_booked == False,
                Slot.start_time >= lower,
            )
            if self.to_time is not None:
                stmt = stmt.where(Slot.start_time <= self.to_time)
            if last is not None:
                stmt = stmt.where(
                    or_(
                        Slot.start_time > last.start_time,
                        and_(Slot.start_time == last.start_time, Slot.id > last.id),
                    )
                )
            stmt = stmt.order_by(Slot.start_time, Slot.id).limit(page_size)

            async with self.store.session_factory() as session:
                result = await session.execute(stmt)
                page = result.scalars().all()

            for slot in page:
                yield slot
            if len(page) < page_size:
                return
            last = page[-1]

    async def all(self, limit: Optional[int] = None) -> List[Slot]:
        slots = []
        async for slot in self:
            slots.append(slot)
            if limit is not None and len(slots) >= limit:
                break
        return slots


class SlotStore:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Optional[Clock] = None,
        *,
        is_referenced: Callable[[UUID], Awaitable[bool]],
        rng: Optional[random.Random] = None,
        page_size: int = settings.BOOKABLE_PAGE_SIZE,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        # Reports whether a non-terminal appointment still points at a slot
        self.is_referenced = is_referenced
        self.rng = rng or random.Random()
        self.page_size = page_size

    # Validation

    def _validate_duration(self, duration_minutes: int):
        low, high = settings.SLOT_MIN_DURATION_MINUTES, settings.SLOT_MAX_DURATION_MINUTES
        if not low <= duration_minutes <= high:
            raise ValidationError(f"Duration must be between {low} and {high} minutes")

    def _validate_fee(self, fee: float):
        if fee < 0:
            raise ValidationError("Consultation fee cannot be negative")

    def _validate_mode(self, consultation_mode) -> ConsultationMode:
        try:
            return ConsultationMode(consultation_mode)
        except ValueError:
            raise ValidationError(f"Unknown consultation mode: {consultation_mode}")

    # Creation

    async def generate(
        self,
        provider_id: UUID,
        from_date: date,
        horizon_days: int,
        daily_times: Sequence[time],
        default_duration: Optional[int] = None,
        fee_range: Tuple[float, float] = (0, 0),
        consultation_mode: ConsultationMode = ConsultationMode.IN_PERSON,
    ) -> List[Slot]:
        """
        Create one slot per business day and template time, starting at
        ``from_date`` and covering ``horizon_days`` calendar days.

        Weekends and start times that are not in the future are skipped.
        Calling this twice for the same range creates duplicates.
        """
        duration = default_duration or settings.DEFAULT_SLOT_DURATION_MINUTES
        self._validate_duration(duration)
        mode = self._validate_mode(consultation_mode)
        if horizon_days <= 0:
            raise ValidationError("Horizon must be at least one day")
        if not daily_times:
            raise ValidationError("At least one daily time is required")
        low, high = fee_range
        self._validate_fee(low)
        if high < low:
            raise ValidationError("Fee range upper bound is below its lower bound")

        now = self.clock.now()
        slots = [
            Slot(
                provider_id=provider_id,
                start_time=start_time,
                duration_minutes=duration,
                fee=pick_fee(fee_range, self.rng),
                consultation_mode=mode.value,
                created_at=now,
                updated_at=now,
            )
            for start_time in slot_start_times(from_date, horizon_days, daily_times)
            if start_time > now
        ]

        async with self.session_factory() as session:
            session.add_all(slots)
            await session.commit()

        logger.info(
            f"Slots generated | Provider: {provider_id} | From: {from_date.isoformat()} | "
            f"Days: {horizon_days} | Count: {len(slots)}"
        )
        return slots

    async def create(
        self,
        provider_id: UUID,
        start_time: datetime,
        duration_minutes: int = 30,
        fee: float = 0,
        consultation_mode: ConsultationMode = ConsultationMode.IN_PERSON,
        notes: Optional[str] = None,
        requirements: Optional[str] = None,
        telemedicine_link: Optional[str] = None,
    ) -> Slot:
        start_time = to_naive_utc(start_time)
        self._validate_duration(duration_minutes)
        self._validate_fee(fee)
        mode = self._validate_mode(consultation_mode)
        if telemedicine_link and not TELEMEDICINE_LINK.match(telemedicine_link):
            raise ValidationError("Telemedicine link must be a valid URL")

        now = self.clock.now()
        if start_time < now:
            raise ValidationError("Cannot create slots in the past")
        if await self.find_active_at(provider_id, start_time):
            raise ValidationError("A slot already exists at this date and time")

        slot = Slot(
            provider_id=provider_id,
            start_time=start_time,
            duration_minutes=duration_minutes,
            fee=fee,
            consultation_mode=mode.value,
            notes=notes,
            requirements=requirements,
            telemedicine_link=telemedicine_link,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(slot)
            await session.commit()
            await session.refresh(slot)
        return slot

    async def update(
        self,
        slot_id: UUID,
        start_time: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
        fee: Optional[float] = None,
        consultation_mode: Optional[ConsultationMode] = None,
        notes: Optional[str] = None,
        requirements: Optional[str] = None,
        telemedicine_link: Optional[str] = None,
    ) -> Slot:
        """Edit an unbooked slot. Fields left as None keep their value."""
        slot = await self.get(slot_id)
        if slot.is_booked:
            raise InvalidTransition("Cannot update a booked slot")
        if await self.is_referenced(slot_id):
            raise InvalidTransition("Cannot update a slot that a live appointment still references")

        values = {}
        if start_time is not None:
            start_time = to_naive_utc(start_time)
            if start_time < self.clock.now():
                raise ValidationError("Cannot schedule slots in the past")
            existing = await self.find_active_at(slot.provider_id, start_time)
            if existing is not None and existing.id != slot.id:
                raise ValidationError("A slot already exists at this date and time")
            values["start_time"] = start_time
        if duration_minutes is not None:
            self._validate_duration(duration_minutes)
            values["duration_minutes"] = duration_minutes
        if fee is not None:
            self._validate_fee(fee)
            values["fee"] = fee
        if consultation_mode is not None:
            values["consultation_mode"] = self._validate_mode(consultation_mode).value
        if telemedicine_link is not None:
            if telemedicine_link and not TELEMEDICINE_LINK.match(telemedicine_link):
                raise ValidationError("Telemedicine link must be a valid URL")
            values["telemedicine_link"] = telemedicine_link or None
        if notes is not None:
            values["notes"] = notes
        if requirements is not None:
            values["requirements"] = requirements
        if not values:
            raise ValidationError("No valid fields to update")

        # Guarded on is_booked so a concurrent claim wins over the edit
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id, Slot.is_booked == False)
            .values(updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise InvalidTransition("Slot was booked before it could be updated")

        logger.info(f"Slot updated | Slot: {slot_id} | Fields: {','.join(sorted(values))}")
        return await self.get(slot_id)

    # Queries

    async def get(self, slot_id: UUID) -> Slot:
        async with self.session_factory() as session:
            slot = await session.get(Slot, slot_id)
        if not slot:
            raise NotFound("Slot not found")
        return slot

    async def find_active_at(self, provider_id: UUID, start_time: datetime) -> Optional[Slot]:
        stmt = select(Slot).where(
            Slot.provider_id == provider_id,
            Slot.start_time == to_naive_utc(start_time),
            Slot.status == SlotStatus.ACTIVE.value,
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    def find_bookable(
        self,
        provider_id: UUID,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
    ) -> BookableSlots:
        from_time = to_naive_utc(from_time) if from_time else None
        to_time = to_naive_utc(to_time) if to_time else None
        if from_time and to_time and to_time < from_time:
            raise ValidationError("to_time must not be before from_time")
        return BookableSlots(self, provider_id, from_time, to_time)

    # Booking state

    async def claim(self, slot_id: UUID, patient_id: UUID, appointment_id: UUID) -> Slot:
        """Book the slot if, at write time, it is active, available, unbooked and not past."""
        now = self.clock.now()
        stmt = (
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.is_booked == False,
                Slot.is_available == True,
                Slot.status == SlotStatus.ACTIVE.value,
                Slot.start_time >= now,
            )
            .values(
                is_booked=True,
                is_available=False,
                patient_id=patient_id,
                appointment_id=appointment_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            slot = await self.get(slot_id)
            reason = self._unavailable_reason(slot, now)
            logger.info(f"Slot claim rejected | Slot: {slot_id} | Reason: {reason}")
            raise SlotUnavailable(reason)

        logger.info(f"Slot claimed | Slot: {slot_id} | Patient: {patient_id} | Appointment: {appointment_id}")
        return await self.get(slot_id)

    def _unavailable_reason(self, slot: Slot, now: datetime) -> str:
        if slot.is_booked:
            return "This slot has already been booked"
        if slot.status != SlotStatus.ACTIVE.value:
            return f"This slot is {slot.status}"
        if slot.start_time < now:
            return "This slot is in the past"
        return "This slot is no longer available"

    async def release(
        self,
        slot_id: UUID,
        released_by: ActorRole,
        reason: Optional[str] = None,
        cancellation: bool = False,
        appointment_id: Optional[UUID] = None,
    ) -> Slot:
        """
        Inverse of :meth:`claim`. When ``appointment_id`` is given the slot
        is only released if it is booked by that appointment.
        """
        now = self.clock.now()
        conditions = [Slot.id == slot_id, Slot.is_booked == True]
        if appointment_id is not None:
            conditions.append(Slot.appointment_id == appointment_id)

        values = dict(
            is_booked=False,
            is_available=True,
            patient_id=None,
            appointment_id=None,
            updated_at=now,
        )
        if cancellation:
            values.update(
                cancelled_by=ActorRole(released_by).value,
                cancellation_reason=reason,
                cancelled_at=now,
            )

        stmt = update(Slot).where(*conditions).values(**values).execution_options(synchronize_session=False)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            slot = await self.get(slot_id)
            if not slot.is_booked:
                raise InvalidTransition("This slot is not booked")
            raise InvalidTransition("This slot is booked by another appointment")

        logger.info(
            f"Slot released | Slot: {slot_id} | By: {ActorRole(released_by).value} | "
            f"Cancellation: {cancellation}"
        )
        return await self.get(slot_id)

    async def set_status(self, slot_id: UUID, status: SlotStatus) -> Slot:
        status = SlotStatus(status)
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id)
            .values(status=status.value, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise NotFound("Slot not found")
        return await self.get(slot_id)

    # Removal

    async def delete(self, slot_id: UUID):
        slot = await self.get(slot_id)
        if slot.is_booked:
            raise InvalidTransition("Cannot delete a booked slot. Cancel the appointment first.")
        if await self.is_referenced(slot_id):
            raise InvalidTransition("Cannot delete a slot that a live appointment still references")

        # Guarded on is_booked so a concurrent claim wins over the delete
        stmt = delete(Slot).where(Slot.id == slot_id, Slot.is_booked == False).execution_options(synchronize_session=False)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount != 1:
            raise InvalidTransition("Slot was booked before it could be deleted")
        logger.info(f"Slot deleted | Slot: {slot_id}")

    async def retire(self, slot_id: UUID, appointment_id: UUID) -> bool:
        """
        Delete a slot that ``appointment_id`` has just moved away from.

        Release and delete happen in one conditional DELETE, so the slot is
        never bookable in between. Returns False when the slot is no longer
        held by that appointment.
        """
        stmt = (
            delete(Slot)
            .where(
                Slot.id == slot_id,
                Slot.is_booked == True,
                Slot.appointment_id == appointment_id,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            logger.warning(f"Vacated slot not retired, no longer held | Slot: {slot_id} | Appointment: {appointment_id}")
            return False
        logger.info(f"Vacated slot retired | Slot: {slot_id} | Appointment: {appointment_id}")
        return True

    async def delete_unbooked(self, provider_id: UUID) -> int:
        """Delete every unbooked slot of the provider that no live appointment references."""
        stmt = select(Slot.id).where(Slot.provider_id == provider_id, Slot.is_booked == False)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            candidates = result.scalars().all()

        deleted = 0
        for slot_id in candidates:
            if await self.is_referenced(slot_id):
                continue
            stmt = delete(Slot).where(Slot.id == slot_id, Slot.is_booked == False).execution_options(synchronize_session=False)
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
            deleted += result.rowcount

        logger.info(f"Unbooked slots deleted | Provider: {provider_id} | Count: {deleted}")
        return deleted

