from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.clock import Clock, SystemClock
from app.core.config import settings
from app.core.rate_limit import RateLimiter, RedisAttemptStore
from app.core.redis import redis_client
from app.db.models import ActorRole
from app.db.session import get_session_factory
from app.services.appointment_store import AppointmentStore
from app.services.booking_service import BookingService
from app.services.integrity_service import IntegrityService
from app.services.notification_service import NotificationDispatcher, dispatcher
from app.services.reschedule_service import RescheduleService
from app.services.slot_store import SlotStore

class Actor(BaseModel):
    role: ActorRole
    id: Optional[UUID] = None

# Identity is resolved upstream; the gateway forwards it as headers
async def get_actor(
    x_actor_role: Optional[str] = Header(default=None),
    x_actor_id: Optional[UUID] = Header(default=None),
) -> Actor:
    if not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Role header",
        )
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Unknown role: {x_actor_role}")
    if role is ActorRole.SYSTEM:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="System role cannot be used over HTTP")
    if role is not ActorRole.ADMIN and x_actor_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing X-Actor-Id header for role {role.value}",
        )
    return Actor(role=role, id=x_actor_id)

def require_roles(*roles: ActorRole):
    async def checker(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return actor
    return checker

def get_clock() -> Clock:
    return SystemClock()

def get_notifier() -> NotificationDispatcher:
    return dispatcher

def get_appointment_store(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> AppointmentStore:
    return AppointmentStore(session_factory, clock)

def get_slot_store(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
    appointments: AppointmentStore = Depends(get_appointment_store),
) -> SlotStore:
    return SlotStore(session_factory, clock, is_referenced=appointments.has_live_reference)

def get_booking_service(
    slots: SlotStore = Depends(get_slot_store),
    appointments: AppointmentStore = Depends(get_appointment_store),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BookingService:
    return BookingService(slots, appointments, notifier)

def get_reschedule_service(
    slots: SlotStore = Depends(get_slot_store),
    appointments: AppointmentStore = Depends(get_appointment_store),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> RescheduleService:
    return RescheduleService(slots, appointments, notifier)

def get_integrity_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> IntegrityService:
    return IntegrityService(session_factory, clock)

def get_rate_limiter() -> RateLimiter:
    return RateLimiter(
        RedisAttemptStore(redis_client),
        settings.RATE_LIMIT_MAX_ATTEMPTS,
        settings.RATE_LIMIT_WINDOW_SECONDS,
    )

async def rate_limit(
    request: Request,
    actor: Actor = Depends(get_actor),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Throttle booking and reschedule attempts per client and actor."""
    host = request.client.host if request.client else "unknown"
    await limiter.check(f"booking:{host}:{actor.role.value}:{actor.id or 'anonymous'}")
