from collections import defaultdict
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select as sa_select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.core.clock import Clock, SystemClock
from app.core.config import settings
from app.core.logger import logger
from app.db.models import Appointment, Slot
from app.schemas.appointment import IntegrityReport
from app.services.appointment_store import LIVE_STATUS_VALUES

class IntegrityService:
    """
    Cross-record checks between slots and appointments, plus stale slot cleanup.

    The audit only reports. Repairing a violation, e.g. choosing which of two
    appointments keeps a slot, is left to an operator.
    """

    def __init__(self, session_factory: async_sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    async def audit(self) -> IntegrityReport:
        async with self.session_factory() as session:
            slots = (await session.execute(select(Slot))).scalars().all()
            live = (
                await session.execute(select(Appointment).where(Appointment.status.in_(LIVE_STATUS_VALUES)))
            ).scalars().all()

        report = IntegrityReport(checked_slots=len(slots), checked_appointments=len(live))
        slots_by_id = {slot.id: slot for slot in slots}

        for slot in slots:
            has_refs = slot.patient_id is not None and slot.appointment_id is not None
            if slot.is_booked and not has_refs:
                report.violations.append(f"Slot {slot.id} is booked without patient and appointment references")
            if not slot.is_booked and (slot.patient_id is not None or slot.appointment_id is not None):
                report.violations.append(f"Slot {slot.id} is unbooked but still holds booking references")
            if slot.is_booked and slot.is_available:
                report.violations.append(f"Slot {slot.id} is both booked and available")

        per_slot = defaultdict(list)
        for appointment in live:
            per_slot[appointment.slot_id].append(appointment.id)
            slot = slots_by_id.get(appointment.slot_id)
            if slot is None:
                report.violations.append(f"Appointment {appointment.id} references missing slot {appointment.slot_id}")
                continue
            if slot.appointment_id != appointment.id:
                report.violations.append(
                    f"Appointment {appointment.id} references slot {slot.id} booked by {slot.appointment_id}"
                )
            if slot.start_time != appointment.scheduled_time:
                report.violations.append(
                    f"Appointment {appointment.id} time {appointment.scheduled_time.isoformat()} "
                    f"differs from slot {slot.id} start {slot.start_time.isoformat()}"
                )

        for slot_id, appointment_ids in per_slot.items():
            if len(appointment_ids) > 1:
                ids = ", ".join(str(a) for a in appointment_ids)
                report.violations.append(f"Slot {slot_id} has {len(appointment_ids)} live appointments: {ids}")

        if report.violations:
            logger.warning(f"Integrity audit found {len(report.violations)} violations")
        else:
            logger.info(f"Integrity audit clean | Slots: {report.checked_slots} | Appointments: {report.checked_appointments}")
        return report

    async def purge_stale_slots(self, retention_days: int = settings.STALE_SLOT_RETENTION_DAYS) -> int:
        """Delete unbooked slots that started more than ``retention_days`` ago."""
        cutoff = self.clock.now() - timedelta(days=retention_days)
        referenced = sa_select(Appointment.slot_id).where(Appointment.status.in_(LIVE_STATUS_VALUES))
        stmt = (
            delete(Slot)
            .where(
                Slot.is_booked == False,
                Slot.start_time < cutoff,
                Slot.id.not_in(referenced),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        logger.info(f"Stale slots purged | Before: {cutoff.isoformat()} | Count: {result.rowcount}")
        return result.rowcount
