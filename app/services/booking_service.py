import asyncio
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from app.core.exceptions import InvalidTransition, ValidationError
from app.core.logger import logger
from app.db.models import ActorRole, Appointment, AppointmentStatus, SlotStatus
from app.schemas.appointment import BookingDetails
from app.services.appointment_store import AppointmentStore, pending_reschedule_of
from app.services.notification_service import (
    EventKind,
    NotificationDispatcher,
    appointment_payload,
    recipients_for,
)
from app.services.slot_store import SlotStore

# Slot status that follows a terminal appointment status
SLOT_STATUS_FOR = {
    AppointmentStatus.COMPLETED: SlotStatus.COMPLETED,
    AppointmentStatus.NO_SHOW: SlotStatus.NO_SHOW,
}

class BookingService:
    def __init__(self, slots: SlotStore, appointments: AppointmentStore, notifier: NotificationDispatcher):
        self.slots = slots
        self.appointments = appointments
        self.notifier = notifier

    async def book(
        self,
        provider_id: UUID,
        patient_id: UUID,
        slot_id: UUID,
        details: Optional[BookingDetails] = None,
    ) -> Appointment:
        """
        Claim ``slot_id`` for the patient and create a pending appointment on it.

        Raises SlotUnavailable when the claim loses (the caller should search
        again), NotFound when the slot does not exist. No other slot is tried.
        """
        slot = await self.slots.get(slot_id)
        if slot.provider_id != provider_id:
            raise ValidationError("Slot does not belong to this provider")

        # The appointment id is allocated up front so the claim can carry it
        appointment_id = uuid4()
        claimed = await self.slots.claim(slot_id, patient_id, appointment_id)

        try:
            appointment = await self.appointments.create(
                provider_id, patient_id, claimed, details, appointment_id=appointment_id
            )
        except BaseException:
            # Also covers cancellation, which would otherwise strand the claimed slot
            logger.warning(f"Appointment creation failed, releasing slot | Slot: {slot_id}")
            await asyncio.shield(self._compensate(slot_id, appointment_id))
            raise

        self.notifier.emit(
            EventKind.REQUESTED,
            appointment.id,
            appointment_payload(appointment, recipients=[ActorRole.PROVIDER.value]),
        )
        logger.info(f"Appointment booked | Appointment: {appointment.id} | Slot: {slot_id} | Patient: {patient_id}")
        return appointment

    async def _compensate(self, slot_id: UUID, appointment_id: UUID):
        try:
            await self.slots.release(slot_id, ActorRole.SYSTEM, appointment_id=appointment_id)
        except Exception:
            logger.exception(f"Compensating release failed | Slot: {slot_id} | Appointment: {appointment_id}")

    async def update_status(
        self,
        appointment_id: UUID,
        new_status: AppointmentStatus,
        actor_role: ActorRole,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Appointment:
        new_status = AppointmentStatus(new_status)
        actor_role = ActorRole(actor_role)
        metadata = metadata or {}
        if actor_role is ActorRole.PATIENT and new_status is not AppointmentStatus.CANCELLED:
            raise InvalidTransition("Patients can only cancel their own appointments")

        before = await self.appointments.get(appointment_id)
        updated = await self.appointments.transition(appointment_id, new_status, actor_role, metadata)
        # The transition is committed; the slot must follow even if the caller goes away
        await asyncio.shield(self._sync_slot(updated, new_status, actor_role, metadata))

        kind = EventKind.CONFIRMED if new_status is AppointmentStatus.CONFIRMED else EventKind.STATUS_CHANGED
        self.notifier.emit(
            kind,
            updated.id,
            appointment_payload(
                updated,
                previous_status=before.status,
                actor=actor_role,
                recipients=recipients_for(actor_role),
            ),
        )

        proposal = pending_reschedule_of(before)
        if proposal is not None and proposal.active and not updated.reschedule_pending:
            self.notifier.emit(
                EventKind.RESCHEDULE_DECIDED,
                updated.id,
                appointment_payload(
                    updated,
                    decision="rejected",
                    decided_by=ActorRole.SYSTEM,
                    recipients=[proposal.proposed_by.value],
                ),
            )
        return updated

    async def _sync_slot(
        self,
        appointment: Appointment,
        new_status: AppointmentStatus,
        actor_role: ActorRole,
        metadata: Dict[str, Any],
    ):
        if new_status is AppointmentStatus.CANCELLED:
            try:
                await self.slots.release(
                    appointment.slot_id,
                    actor_role,
                    reason=metadata.get("reason") or "Appointment cancelled",
                    cancellation=True,
                    appointment_id=appointment.id,
                )
            except InvalidTransition as e:
                # Nothing booked on behalf of this appointment
                logger.warning(f"Slot not released on cancel | Slot: {appointment.slot_id} | {e.detail}")
        elif new_status in SLOT_STATUS_FOR:
            await self.slots.set_status(appointment.slot_id, SLOT_STATUS_FOR[new_status])

    async def confirm(self, appointment_id: UUID, actor_role: ActorRole = ActorRole.PROVIDER) -> Appointment:
        return await self.update_status(appointment_id, AppointmentStatus.CONFIRMED, actor_role)

    async def complete(
        self,
        appointment_id: UUID,
        actor_role: ActorRole = ActorRole.PROVIDER,
        doctor_notes: Optional[str] = None,
        diagnosis: Optional[str] = None,
        treatment_plan: Optional[str] = None,
    ) -> Appointment:
        return await self.update_status(
            appointment_id,
            AppointmentStatus.COMPLETED,
            actor_role,
            {"doctor_notes": doctor_notes, "diagnosis": diagnosis, "treatment_plan": treatment_plan},
        )

    async def cancel(
        self,
        appointment_id: UUID,
        actor_role: ActorRole,
        reason: Optional[str] = None,
        cancellation_fee: float = 0,
    ) -> Appointment:
        return await self.update_status(
            appointment_id,
            AppointmentStatus.CANCELLED,
            actor_role,
            {"reason": reason, "cancellation_fee": cancellation_fee},
        )

    async def reject(self, appointment_id: UUID, reason: Optional[str] = None, actor_role: ActorRole = ActorRole.PROVIDER) -> Appointment:
        return await self.update_status(
            appointment_id,
            AppointmentStatus.CANCELLED,
            actor_role,
            {"reason": reason, "rejected": True},
        )

    async def mark_no_show(self, appointment_id: UUID, actor_role: ActorRole = ActorRole.PROVIDER) -> Appointment:
        return await self.update_status(appointment_id, AppointmentStatus.NO_SHOW, actor_role)
