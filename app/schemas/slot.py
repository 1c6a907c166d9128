from pydantic import BaseModel, Field
from datetime import date, datetime, time
from typing import Optional, List, Tuple
from uuid import UUID

from app.db.models.enums import ConsultationMode

class SlotGenerateRequest(BaseModel):
    from_date: date
    horizon_days: int = Field(default=14, gt=0, le=366)
    daily_times: List[time] = [time(10, 0), time(14, 0)]
    duration_minutes: int = 30
    fee_range: Tuple[float, float] = (0, 0)
    consultation_mode: ConsultationMode = ConsultationMode.IN_PERSON

class SlotCreate(BaseModel):
    start_time: datetime
    duration_minutes: int = 30
    fee: float = 0
    consultation_mode: ConsultationMode = ConsultationMode.IN_PERSON
    notes: Optional[str] = Field(default=None, max_length=500)
    requirements: Optional[str] = Field(default=None, max_length=300)
    telemedicine_link: Optional[str] = None

class SlotUpdate(BaseModel):
    start_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    fee: Optional[float] = None
    consultation_mode: Optional[ConsultationMode] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    requirements: Optional[str] = Field(default=None, max_length=300)
    telemedicine_link: Optional[str] = None

class BulkDeleteResponse(BaseModel):
    provider_id: UUID
    deleted: int

class SlotResponse(BaseModel):
    id: UUID
    provider_id: UUID
    start_time: datetime
    duration_minutes: int
    fee: float
    consultation_mode: str
    status: str
    is_available: bool
    is_booked: bool
    patient_id: Optional[UUID] = None
    appointment_id: Optional[UUID] = None
    notes: Optional[str] = None
    requirements: Optional[str] = None
    telemedicine_link: Optional[str] = None

    class Config:
        from_attributes = True

class BookableSlotsResponse(BaseModel):
    provider_id: UUID
    slots: List[SlotResponse]
