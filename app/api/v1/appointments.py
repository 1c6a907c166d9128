from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import (
    Actor,
    get_actor,
    get_appointment_store,
    get_booking_service,
    get_reschedule_service,
    rate_limit,
    require_roles,
)
from app.db.models import ActorRole, Appointment
from app.schemas.appointment import (
    AppointmentBook,
    AppointmentResponse,
    AppointmentStatusUpdate,
    DirectRescheduleRequest,
    RescheduleDecisionRequest,
    RescheduleProposal,
)
from app.services.appointment_store import AppointmentStore
from app.services.booking_service import BookingService
from app.services.reschedule_service import RescheduleService

router = APIRouter()

def ensure_party(appointment: Appointment, actor: Actor):
    """Patients and providers may only act on their own appointments."""
    if actor.role is ActorRole.ADMIN:
        return
    if actor.role is ActorRole.PATIENT and appointment.patient_id != actor.id:
        raise HTTPException(status_code=403, detail="Not your appointment")
    if actor.role is ActorRole.PROVIDER and appointment.provider_id != actor.id:
        raise HTTPException(status_code=403, detail="Not your appointment")

@router.post("/", response_model=AppointmentResponse, dependencies=[Depends(rate_limit)])
async def book_appointment(
    request: AppointmentBook,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    if actor.role is ActorRole.PATIENT:
        patient_id = actor.id
    else:
        if request.patient_id is None:
            raise HTTPException(status_code=400, detail="patient_id is required when booking on behalf of a patient")
        patient_id = request.patient_id

    details = request.details.model_copy(update={"created_by": actor.role})
    return await service.book(request.provider_id, patient_id, request.slot_id, details)

@router.get("/upcoming", response_model=List[AppointmentResponse])
async def upcoming_appointments(
    hours_ahead: int = Query(default=24, gt=0, le=168),
    store: AppointmentStore = Depends(get_appointment_store),
    actor: Actor = Depends(require_roles(ActorRole.ADMIN)),
):
    return await store.find_upcoming_for_reminders(hours_ahead)

@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def read_appointment(
    appointment_id: UUID,
    actor: Actor = Depends(get_actor),
    store: AppointmentStore = Depends(get_appointment_store),
):
    appointment = await store.get(appointment_id)
    ensure_party(appointment, actor)
    return appointment

@router.put("/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: UUID,
    request: AppointmentStatusUpdate,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    ensure_party(await service.appointments.get(appointment_id), actor)
    metadata = request.model_dump(exclude={"status"})
    return await service.update_status(appointment_id, request.status, actor.role, metadata)

@router.put("/{appointment_id}/reschedule", response_model=AppointmentResponse, dependencies=[Depends(rate_limit)])
async def reschedule_appointment(
    appointment_id: UUID,
    request: DirectRescheduleRequest,
    actor: Actor = Depends(get_actor),
    service: RescheduleService = Depends(get_reschedule_service),
):
    ensure_party(await service.appointments.get(appointment_id), actor)
    return await service.reschedule(appointment_id, request.new_slot_id, actor.role, request.reason)

@router.post("/{appointment_id}/reschedule/propose", response_model=AppointmentResponse, dependencies=[Depends(rate_limit)])
async def propose_reschedule(
    appointment_id: UUID,
    request: RescheduleProposal,
    actor: Actor = Depends(require_roles(ActorRole.PATIENT, ActorRole.PROVIDER)),
    service: RescheduleService = Depends(get_reschedule_service),
):
    ensure_party(await service.appointments.get(appointment_id), actor)
    return await service.propose(
        appointment_id,
        actor.role,
        proposed_slot_id=request.proposed_slot_id,
        proposed_time=request.proposed_time,
        reason=request.reason,
    )

@router.put("/{appointment_id}/reschedule/decision", response_model=AppointmentResponse)
async def decide_reschedule(
    appointment_id: UUID,
    request: RescheduleDecisionRequest,
    actor: Actor = Depends(require_roles(ActorRole.PATIENT, ActorRole.PROVIDER)),
    service: RescheduleService = Depends(get_reschedule_service),
):
    ensure_party(await service.appointments.get(appointment_id), actor)
    return await service.decide(appointment_id, actor.role, request.decision, request.reason)
