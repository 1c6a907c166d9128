from enum import Enum


class SlotStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no-show"


class ConsultationMode(str, Enum):
    IN_PERSON = "in-person"
    TELEMEDICINE = "telemedicine"
    PHONE = "phone"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)
LIVE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


class AppointmentType(str, Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    CHECK_UP = "check-up"
    PROCEDURE = "procedure"
    TELEMEDICINE = "telemedicine"


class ActorRole(str, Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"

    @property
    def counterparty(self) -> "ActorRole":
        if self is ActorRole.PATIENT:
            return ActorRole.PROVIDER
        if self is ActorRole.PROVIDER:
            return ActorRole.PATIENT
        raise ValueError(f"{self.value} has no counterparty")


class RescheduleDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"
