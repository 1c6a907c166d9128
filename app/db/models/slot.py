from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timedelta
from uuid import UUID, uuid4
from sqlalchemy import DateTime, Index

class Slot(SQLModel, table=True):
    __tablename__ = "slots"
    __table_args__ = (
        Index("ix_slots_provider_start", "provider_id", "start_time"),
        Index("ix_slots_bookable", "is_available", "is_booked", "status"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    provider_id: UUID = Field(index=True)
    start_time: datetime = Field(sa_type=DateTime)
    duration_minutes: int = Field(default=30)
    fee: float = Field(default=0)
    consultation_mode: str = Field(default="in-person") # in-person, telemedicine, phone
    status: str = Field(default="active") # active, cancelled, completed, no-show
    is_available: bool = Field(default=True)
    is_booked: bool = Field(default=False)
    patient_id: Optional[UUID] = Field(default=None, index=True)
    appointment_id: Optional[UUID] = Field(default=None, index=True)
    notes: Optional[str] = None
    requirements: Optional[str] = None
    telemedicine_link: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def can_be_booked(self, now: datetime) -> bool:
        return (
            self.is_available
            and not self.is_booked
            and self.status == "active"
            and self.start_time >= now
        )
