from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import JSON, Column, DateTime

class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    provider_id: UUID = Field(index=True)
    patient_id: UUID = Field(index=True)
    slot_id: UUID = Field(index=True)
    scheduled_time: datetime = Field(index=True, sa_type=DateTime)
    duration_minutes: int = Field(default=30)
    fee: float = Field(default=0)
    consultation_mode: str = Field(default="in-person")
    appointment_type: str = Field(default="consultation")
    status: str = Field(default="pending", index=True) # pending, confirmed, completed, cancelled, no-show
    reason_for_visit: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None

    # Clinical notes, set on completion
    doctor_notes: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None

    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancellation_fee: float = Field(default=0)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    rejection_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    # Outstanding proposal; reschedule_pending mirrors pending_reschedule["active"]
    pending_reschedule: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    reschedule_pending: bool = Field(default=False)
    rescheduled_from: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    version: int = Field(default=0)
    created_by: str = Field(default="patient")
    last_modified_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)
