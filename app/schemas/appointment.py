from pydantic import BaseModel, Field, model_validator
from uuid import UUID
from datetime import datetime
from typing import Optional, List

from app.db.models.enums import (
    ActorRole,
    AppointmentStatus,
    AppointmentType,
    RescheduleDecision,
)

class BookingDetails(BaseModel):
    reason_for_visit: Optional[str] = Field(default=None, max_length=500)
    symptoms: Optional[str] = Field(default=None, max_length=1000)
    notes: Optional[str] = Field(default=None, max_length=1000)
    appointment_type: AppointmentType = AppointmentType.CONSULTATION
    created_by: ActorRole = ActorRole.PATIENT

class PendingReschedule(BaseModel):
    active: bool = True
    proposed_by: ActorRole
    proposed_at: datetime
    proposed_time: datetime
    proposed_slot_id: Optional[UUID] = None
    reason: str = ""
    decision: Optional[RescheduleDecision] = None
    decided_by: Optional[ActorRole] = None
    decision_at: Optional[datetime] = None
    decision_reason: Optional[str] = None

class RescheduleHistory(BaseModel):
    original_date: datetime
    original_slot_id: Optional[UUID] = None
    rescheduled_by: ActorRole
    rescheduled_at: datetime
    reason: Optional[str] = None

class AppointmentBook(BaseModel):
    provider_id: UUID
    slot_id: UUID
    # Required when staff book on behalf of a patient
    patient_id: Optional[UUID] = None
    details: BookingDetails = BookingDetails()

class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus
    reason: Optional[str] = Field(default=None, max_length=500)
    cancellation_fee: float = 0
    rejected: bool = False
    doctor_notes: Optional[str] = Field(default=None, max_length=2000)
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = Field(default=None, max_length=1500)

class DirectRescheduleRequest(BaseModel):
    new_slot_id: UUID
    reason: Optional[str] = Field(default=None, max_length=500)

class RescheduleProposal(BaseModel):
    proposed_slot_id: Optional[UUID] = None
    proposed_time: Optional[datetime] = None
    reason: str = Field(default="", max_length=500)

    @model_validator(mode="after")
    def check_target(self):
        if (self.proposed_slot_id is None) == (self.proposed_time is None):
            raise ValueError("Provide exactly one of proposed_slot_id or proposed_time")
        return self

class RescheduleDecisionRequest(BaseModel):
    decision: RescheduleDecision
    reason: str = Field(default="", max_length=500)

class AppointmentResponse(BaseModel):
    id: UUID
    provider_id: UUID
    patient_id: UUID
    slot_id: UUID
    scheduled_time: datetime
    duration_minutes: int
    fee: float
    consultation_mode: str
    appointment_type: str
    status: str
    reason_for_visit: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None
    doctor_notes: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancellation_fee: float = 0
    rejection_reason: Optional[str] = None
    pending_reschedule: Optional[PendingReschedule] = None
    rescheduled_from: Optional[RescheduleHistory] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class IntegrityReport(BaseModel):
    checked_slots: int = 0
    checked_appointments: int = 0
    violations: List[str] = []

    @property
    def ok(self) -> bool:
        return not self.violations
