from sqlmodel import SQLModel
from .slot import Slot
from .appointment import Appointment
from .enums import (
    ActorRole,
    AppointmentStatus,
    AppointmentType,
    ConsultationMode,
    RescheduleDecision,
    SlotStatus,
)

__all__ = [
    "SQLModel",
    "Slot",
    "Appointment",
    "ActorRole",
    "AppointmentStatus",
    "AppointmentType",
    "ConsultationMode",
    "RescheduleDecision",
    "SlotStatus",
]
