import asyncio
from datetime import datetime
from typing import Optional, Tuple
from uuid import UUID

from app.core.config import settings
from app.core.exceptions import (
    BookingError,
    InvalidTransition,
    ProposalConflict,
    SlotUnavailable,
    ValidationError,
)
from app.core.logger import logger
from app.core.utils import to_naive_utc
from app.db.models import ActorRole, Appointment, AppointmentStatus, RescheduleDecision, Slot
from app.schemas.appointment import PendingReschedule
from app.services.appointment_store import AppointmentStore, pending_reschedule_of
from app.services.notification_service import (
    EventKind,
    NotificationDispatcher,
    appointment_payload,
    recipients_for,
)
from app.services.slot_store import SlotStore

PROPOSING_ROLES = (ActorRole.PATIENT, ActorRole.PROVIDER)

class RescheduleService:
    """
    Moves an existing appointment to another slot without changing its id.

    Both protocols end in the same sequence: claim the new slot for the
    appointment, update the appointment in place, then release and delete
    the slot it left.
    """

    def __init__(
        self,
        slots: SlotStore,
        appointments: AppointmentStore,
        notifier: NotificationDispatcher,
        requires_confirmation: bool = settings.DIRECT_RESCHEDULE_REQUIRES_CONFIRMATION,
    ):
        self.slots = slots
        self.appointments = appointments
        self.notifier = notifier
        self.requires_confirmation = requires_confirmation

    @property
    def clock(self):
        return self.slots.clock

    def _ensure_live(self, appointment: Appointment):
        status = AppointmentStatus(appointment.status)
        if status.is_terminal:
            raise InvalidTransition("Only pending or confirmed appointments can be rescheduled")

    def _ensure_target(self, appointment: Appointment, slot: Slot):
        if slot.provider_id != appointment.provider_id:
            raise ValidationError("New slot must belong to the same provider")
        if slot.id == appointment.slot_id:
            raise ValidationError("Appointment is already booked on this slot")
        if not slot.can_be_booked(self.clock.now()):
            raise SlotUnavailable("Selected slot is not available for booking")

    # Direct reschedule

    async def reschedule(
        self,
        appointment_id: UUID,
        new_slot_id: UUID,
        actor_role: ActorRole,
        reason: Optional[str] = None,
    ) -> Appointment:
        actor_role = ActorRole(actor_role)
        appointment = await self.appointments.get(appointment_id)
        self._ensure_live(appointment)
        new_slot = await self.slots.get(new_slot_id)
        self._ensure_target(appointment, new_slot)

        claimed = await self.slots.claim(new_slot.id, appointment.patient_id, appointment.id)

        status = AppointmentStatus.PENDING if self.requires_confirmation else None
        superseded = None
        proposal = pending_reschedule_of(appointment)
        if proposal is not None and proposal.active:
            superseded = proposal.model_copy(
                update=dict(
                    active=False,
                    decision=RescheduleDecision.SUPERSEDED,
                    decided_by=actor_role,
                    decision_at=self.clock.now(),
                    decision_reason="Superseded by a direct reschedule",
                )
            )

        try:
            updated = await self.appointments.reschedule(
                appointment.id,
                claimed,
                actor_role,
                reason or f"{actor_role.value.capitalize()} rescheduled appointment",
                appointment.version,
                status=status,
                pending_reschedule=superseded,
            )
        except BaseException:
            await asyncio.shield(self._compensate(claimed.id, appointment.id))
            raise

        await asyncio.shield(self._retire_slot(appointment.slot_id, appointment.id))

        self.notifier.emit(
            EventKind.RESCHEDULED,
            updated.id,
            appointment_payload(
                updated,
                previous_time=appointment.scheduled_time,
                rescheduled_by=actor_role,
                recipients=recipients_for(actor_role),
            ),
        )
        return updated

    # Propose / decide

    async def propose(
        self,
        appointment_id: UUID,
        actor_role: ActorRole,
        proposed_slot_id: Optional[UUID] = None,
        proposed_time: Optional[datetime] = None,
        reason: str = "",
    ) -> Appointment:
        """
        Record a reschedule proposal for the counterparty to decide.

        The current slot and time stay untouched until the proposal is
        approved. Only one proposal can be active per appointment.
        """
        actor_role = ActorRole(actor_role)
        if actor_role not in PROPOSING_ROLES:
            raise InvalidTransition("Only the patient or the provider can propose a reschedule")
        if (proposed_slot_id is None) == (proposed_time is None):
            raise ValidationError("Provide exactly one of proposed_slot_id or proposed_time")

        appointment = await self.appointments.get(appointment_id)
        self._ensure_live(appointment)
        current = pending_reschedule_of(appointment)
        if appointment.reschedule_pending and current is not None:
            raise ProposalConflict(f"There is already an active reschedule proposal by {current.proposed_by.value}")

        now = self.clock.now()
        if proposed_slot_id is not None:
            slot = await self.slots.get(proposed_slot_id)
            self._ensure_target(appointment, slot)
            target_time = slot.start_time
        else:
            target_time = to_naive_utc(proposed_time)
            if target_time <= now:
                raise ValidationError("Proposed date/time must be a valid future date")
            if target_time == appointment.scheduled_time:
                raise ValidationError("Proposed time equals the current appointment time")

        record = PendingReschedule(
            active=True,
            proposed_by=actor_role,
            proposed_at=now,
            proposed_time=target_time,
            proposed_slot_id=proposed_slot_id,
            reason=reason or "",
        )
        updated = await self.appointments.set_pending_reschedule(appointment.id, record, appointment.version, actor_role)
        logger.info(
            f"Reschedule proposed | Appointment: {appointment.id} | By: {actor_role.value} | "
            f"To: {target_time.isoformat()}"
        )

        self.notifier.emit(
            EventKind.RESCHEDULE_PROPOSED,
            updated.id,
            appointment_payload(
                updated,
                proposed_time=target_time,
                proposed_by=actor_role,
                reason=record.reason,
                recipients=[actor_role.counterparty.value],
            ),
        )
        return updated

    async def decide(
        self,
        appointment_id: UUID,
        actor_role: ActorRole,
        decision: RescheduleDecision,
        reason: str = "",
    ) -> Appointment:
        actor_role = ActorRole(actor_role)
        decision = RescheduleDecision(decision)
        if decision not in (RescheduleDecision.APPROVED, RescheduleDecision.REJECTED):
            raise ValidationError("Decision must be 'approved' or 'rejected'")

        appointment = await self.appointments.get(appointment_id)
        proposal = pending_reschedule_of(appointment)
        if not appointment.reschedule_pending or proposal is None or not proposal.active:
            raise ProposalConflict("No pending reschedule to decide")
        if actor_role is not proposal.proposed_by.counterparty:
            raise InvalidTransition("Only the other party can decide on this proposal")

        # Second concurrent decide loses here
        locked = await self.appointments.claim_proposal(appointment.id, appointment.version)

        if decision is RescheduleDecision.REJECTED:
            record = proposal.model_copy(
                update=dict(
                    active=False,
                    decision=RescheduleDecision.REJECTED,
                    decided_by=actor_role,
                    decision_at=self.clock.now(),
                    decision_reason=reason or "Reschedule rejected",
                )
            )
            updated = await self.appointments.set_pending_reschedule(locked.id, record, locked.version, actor_role)
        else:
            updated = await self._approve(locked, proposal, actor_role, reason)

        logger.info(
            f"Reschedule decided | Appointment: {appointment.id} | Decision: {decision.value} | "
            f"By: {actor_role.value}"
        )
        self.notifier.emit(
            EventKind.RESCHEDULE_DECIDED,
            updated.id,
            appointment_payload(
                updated,
                decision=decision,
                decided_by=actor_role,
                reason=reason,
                recipients=[proposal.proposed_by.value],
            ),
        )
        return updated

    async def _approve(
        self,
        appointment: Appointment,
        proposal: PendingReschedule,
        actor_role: ActorRole,
        reason: str,
    ) -> Appointment:
        target, created = await self._resolve_target(appointment, proposal)

        try:
            claimed = await self.slots.claim(target.id, appointment.patient_id, appointment.id)
        except BookingError:
            if created:
                await self.slots.delete(target.id)
            raise

        record = proposal.model_copy(
            update=dict(
                active=False,
                decision=RescheduleDecision.APPROVED,
                decided_by=actor_role,
                decision_at=self.clock.now(),
                decision_reason=reason or "Reschedule approved",
            )
        )
        try:
            updated = await self.appointments.reschedule(
                appointment.id,
                claimed,
                proposal.proposed_by,
                proposal.reason or reason or "Reschedule approved",
                appointment.version,
                status=AppointmentStatus.CONFIRMED,
                pending_reschedule=record,
            )
        except BaseException:
            await asyncio.shield(self._compensate(claimed.id, appointment.id, delete=created))
            raise

        await asyncio.shield(self._retire_slot(appointment.slot_id, appointment.id))
        return updated

    async def _resolve_target(self, appointment: Appointment, proposal: PendingReschedule) -> Tuple[Slot, bool]:
        """The slot an approved proposal moves to, and whether it was created for it."""
        if proposal.proposed_slot_id is not None:
            slot = await self.slots.get(proposal.proposed_slot_id)
            if slot.provider_id != appointment.provider_id:
                raise ValidationError("Slot must belong to the same provider")
            return slot, False

        existing = await self.slots.find_active_at(appointment.provider_id, proposal.proposed_time)
        if existing is not None:
            return existing, False

        if proposal.proposed_time < self.clock.now():
            raise SlotUnavailable("The proposed time has already passed")
        slot = await self.slots.create(
            appointment.provider_id,
            proposal.proposed_time,
            duration_minutes=appointment.duration_minutes,
            fee=appointment.fee,
            consultation_mode=appointment.consultation_mode,
        )
        return slot, True

    async def _compensate(self, slot_id: UUID, appointment_id: UUID, delete: bool = False):
        logger.warning(f"Reschedule failed, releasing new slot | Slot: {slot_id} | Appointment: {appointment_id}")
        try:
            if delete:
                await self.slots.retire(slot_id, appointment_id)
            else:
                await self.slots.release(slot_id, ActorRole.SYSTEM, appointment_id=appointment_id)
        except Exception:
            logger.exception(f"Compensating release failed | Slot: {slot_id} | Appointment: {appointment_id}")

    async def _retire_slot(self, slot_id: UUID, appointment_id: UUID):
        # Vacated slots are not recycled into the bookable pool. The appointment
        # already points at its new slot, so a failure here is only logged.
        try:
            await self.slots.retire(slot_id, appointment_id)
        except Exception:
            logger.exception(f"Retiring vacated slot failed | Slot: {slot_id} | Appointment: {appointment_id}")
