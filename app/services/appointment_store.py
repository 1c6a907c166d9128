from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from app.core.clock import Clock, SystemClock
from app.core.exceptions import ConcurrentModification, InvalidTransition, NotFound, ProposalConflict, ValidationError
from app.core.logger import logger
from app.db.models import ActorRole, Appointment, AppointmentStatus, RescheduleDecision, Slot
from app.db.models.enums import LIVE_STATUSES
from app.schemas.appointment import BookingDetails, PendingReschedule, RescheduleHistory

ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
}

LIVE_STATUS_VALUES = [status.value for status in LIVE_STATUSES]

def pending_reschedule_of(appointment: Appointment) -> Optional[PendingReschedule]:
    if not appointment.pending_reschedule:
        return None
    return PendingReschedule.model_validate(appointment.pending_reschedule)

def rescheduled_from_of(appointment: Appointment) -> Optional[RescheduleHistory]:
    if not appointment.rescheduled_from:
        return None
    return RescheduleHistory.model_validate(appointment.rescheduled_from)

class AppointmentStore:
    """
    Persistence and state machine for appointments.

    Every write is conditional on the ``version`` read beforehand and bumps
    it, so two writers racing on the same appointment cannot both succeed.
    """

    def __init__(self, session_factory: async_sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    async def create(
        self,
        provider_id: UUID,
        patient_id: UUID,
        slot: Slot,
        details: Optional[BookingDetails] = None,
        appointment_id: Optional[UUID] = None,
    ) -> Appointment:
        details = details or BookingDetails()
        if slot.provider_id != provider_id:
            raise ValidationError("Slot does not belong to this provider")

        now = self.clock.now()
        appointment = Appointment(
            id=appointment_id or uuid4(),
            provider_id=provider_id,
            patient_id=patient_id,
            slot_id=slot.id,
            scheduled_time=slot.start_time,
            duration_minutes=slot.duration_minutes,
            fee=slot.fee,
            consultation_mode=slot.consultation_mode,
            appointment_type=details.appointment_type.value,
            status=AppointmentStatus.PENDING.value,
            reason_for_visit=details.reason_for_visit,
            symptoms=details.symptoms,
            notes=details.notes,
            created_by=details.created_by.value,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(appointment)
            await session.commit()
            await session.refresh(appointment)
        return appointment

    async def get(self, appointment_id: UUID) -> Appointment:
        async with self.session_factory() as session:
            appointment = await session.get(Appointment, appointment_id)
        if not appointment:
            raise NotFound("Appointment not found")
        return appointment

    async def has_live_reference(self, slot_id: UUID) -> bool:
        stmt = select(func.count(Appointment.id)).where(
            Appointment.slot_id == slot_id,
            Appointment.status.in_(LIVE_STATUS_VALUES),
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return (result.scalar() or 0) > 0

    async def find_upcoming_for_reminders(self, hours_ahead: int = 24) -> List[Appointment]:
        now = self.clock.now()
        stmt = select(Appointment).where(
            Appointment.status.in_(LIVE_STATUS_VALUES),
            Appointment.scheduled_time >= now,
            Appointment.scheduled_time <= now + timedelta(hours=hours_ahead),
        ).order_by(Appointment.scheduled_time)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def _write(
        self,
        appointment_id: UUID,
        expected_version: int,
        values: Dict[str, Any],
        conditions: Sequence = (),
    ) -> Optional[Appointment]:
        """Apply ``values`` if the row still has ``expected_version``; None if another write got there first."""
        stmt = (
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.version == expected_version,
                *conditions,
            )
            .values(version=expected_version + 1, updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount != 1:
            # Raises NotFound when the row is gone
            await self.get(appointment_id)
            return None
        return await self.get(appointment_id)

    async def transition(
        self,
        appointment_id: UUID,
        new_status: AppointmentStatus,
        actor_role: ActorRole,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Appointment:
        new_status = AppointmentStatus(new_status)
        actor_role = ActorRole(actor_role)
        metadata = metadata or {}
        appointment = await self.get(appointment_id)
        current = AppointmentStatus(appointment.status)

        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"Cannot move appointment from {current.value} to {new_status.value}")

        now = self.clock.now()
        values: Dict[str, Any] = {"status": new_status.value, "last_modified_by": actor_role.value}

        if new_status is AppointmentStatus.CONFIRMED:
            values["confirmed_at"] = now
        elif new_status is AppointmentStatus.COMPLETED:
            values["completed_at"] = now
            for field in ("doctor_notes", "diagnosis", "treatment_plan"):
                if metadata.get(field):
                    values[field] = metadata[field]
        elif new_status is AppointmentStatus.CANCELLED:
            fee = metadata.get("cancellation_fee") or 0
            if fee < 0:
                raise ValidationError("Cancellation fee cannot be negative")
            values.update(
                cancelled_by=actor_role.value,
                cancellation_reason=metadata.get("reason"),
                cancellation_fee=fee,
                cancelled_at=now,
            )
            if metadata.get("rejected"):
                if current is not AppointmentStatus.PENDING:
                    raise InvalidTransition("Only pending appointments can be rejected")
                values["rejection_reason"] = metadata.get("reason") or "No reason provided"

        # A proposal cannot outlive the booking it would move
        proposal = pending_reschedule_of(appointment)
        if new_status.is_terminal and proposal is not None and proposal.active:
            proposal = proposal.model_copy(
                update=dict(
                    active=False,
                    decision=RescheduleDecision.REJECTED,
                    decided_by=ActorRole.SYSTEM,
                    decision_at=now,
                    decision_reason=f"Appointment {new_status.value}",
                )
            )
            values.update(pending_reschedule=proposal.model_dump(mode="json"), reschedule_pending=False)

        updated = await self._write(
            appointment.id,
            appointment.version,
            values,
            (Appointment.status == current.value,),
        )
        if updated is None:
            raise ConcurrentModification("Appointment was modified concurrently; reload and retry")

        logger.info(
            f"Appointment status changed | Appointment: {appointment.id} | "
            f"{current.value} -> {new_status.value} | By: {actor_role.value}"
        )
        return updated

    async def reschedule(
        self,
        appointment_id: UUID,
        new_slot: Slot,
        actor_role: ActorRole,
        reason: Optional[str],
        expected_version: int,
        status: Optional[AppointmentStatus] = None,
        pending_reschedule: Optional[PendingReschedule] = None,
    ) -> Appointment:
        """
        Point the appointment at ``new_slot`` in place, keeping its id.

        ``rescheduled_from`` is overwritten with the time and slot held just
        before this call. Slot booking state is left to the caller.
        """
        actor_role = ActorRole(actor_role)
        appointment = await self.get(appointment_id)
        current = AppointmentStatus(appointment.status)
        if current.is_terminal:
            raise InvalidTransition(f"Cannot reschedule a {current.value} appointment")
        if appointment.version != expected_version:
            raise ConcurrentModification("Appointment was modified concurrently; reload and retry")
        if new_slot.provider_id != appointment.provider_id:
            raise ValidationError("New slot must belong to the same provider")

        now = self.clock.now()
        history = RescheduleHistory(
            original_date=appointment.scheduled_time,
            original_slot_id=appointment.slot_id,
            rescheduled_by=actor_role,
            rescheduled_at=now,
            reason=reason,
        )
        values: Dict[str, Any] = dict(
            slot_id=new_slot.id,
            scheduled_time=new_slot.start_time,
            duration_minutes=new_slot.duration_minutes,
            fee=new_slot.fee,
            consultation_mode=new_slot.consultation_mode,
            rescheduled_from=history.model_dump(mode="json"),
            last_modified_by=actor_role.value,
        )
        if status is not None:
            status = AppointmentStatus(status)
            values["status"] = status.value
            if status is AppointmentStatus.CONFIRMED:
                values["confirmed_at"] = now
        if pending_reschedule is not None:
            values["pending_reschedule"] = pending_reschedule.model_dump(mode="json")
            values["reschedule_pending"] = pending_reschedule.active

        updated = await self._write(
            appointment.id,
            expected_version,
            values,
            (Appointment.status == current.value,),
        )
        if updated is None:
            raise ConcurrentModification("Appointment was modified concurrently; reload and retry")

        logger.info(
            f"Appointment rescheduled | Appointment: {appointment.id} | "
            f"From: {appointment.scheduled_time.isoformat()} | To: {new_slot.start_time.isoformat()} | "
            f"By: {actor_role.value}"
        )
        return updated

    async def set_pending_reschedule(
        self,
        appointment_id: UUID,
        record: PendingReschedule,
        expected_version: int,
        actor_role: ActorRole,
    ) -> Appointment:
        """
        Open (``record.active``) or close a reschedule proposal.

        Opening requires that no proposal is active and the appointment is
        live; closing requires an active proposal. Losing either check, or
        the version check, raises :class:`ProposalConflict`.
        """
        if record.active:
            conditions = (
                Appointment.reschedule_pending == False,
                Appointment.status.in_(LIVE_STATUS_VALUES),
            )
        else:
            conditions = (Appointment.reschedule_pending == True,)

        updated = await self._write(
            appointment_id,
            expected_version,
            dict(
                pending_reschedule=record.model_dump(mode="json"),
                reschedule_pending=record.active,
                last_modified_by=ActorRole(actor_role).value,
            ),
            conditions,
        )
        if updated is None:
            raise ProposalConflict("The reschedule proposal changed concurrently; reload and retry")
        return updated

    async def claim_proposal(self, appointment_id: UUID, expected_version: int) -> Appointment:
        """Take the per-appointment gate for deciding the active proposal."""
        updated = await self._write(
            appointment_id,
            expected_version,
            {},
            (Appointment.reschedule_pending == True,),
        )
        if updated is None:
            raise ProposalConflict("This reschedule proposal is already being decided")
        return updated
