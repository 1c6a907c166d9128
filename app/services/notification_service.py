"""
Notification port for appointment lifecycle events.

Deliveries run as background tasks. A failed or slow delivery is logged and
never reaches the caller of the booking or reschedule operation.
"""

import asyncio
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set
from uuid import UUID

from app.core.clock import Clock, SystemClock
from app.core.config import settings
from app.core.logger import logger
from app.core.redis import RedisClient, redis_client
from app.db.models import ActorRole, Appointment


class EventKind(str, Enum):
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    STATUS_CHANGED = "status-changed"
    RESCHEDULED = "reschedule"
    RESCHEDULE_PROPOSED = "reschedule-proposed"
    RESCHEDULE_DECIDED = "reschedule-decided"


def appointment_payload(appointment: Appointment, **extra) -> Dict[str, Any]:
    payload = {
        "provider_id": str(appointment.provider_id),
        "patient_id": str(appointment.patient_id),
        "slot_id": str(appointment.slot_id),
        "scheduled_time": appointment.scheduled_time.isoformat(),
        "status": appointment.status,
    }
    for key, value in extra.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, UUID):
            value = str(value)
        payload[key] = value
    return payload


def recipients_for(actor_role: ActorRole) -> list:
    # Everyone on the booking except whoever acted
    return [role.value for role in (ActorRole.PATIENT, ActorRole.PROVIDER) if role != ActorRole(actor_role)]


class NotificationPort:
    async def notify(self, event_kind: EventKind, appointment_id: UUID, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotifier(NotificationPort):
    async def notify(self, event_kind: EventKind, appointment_id: UUID, payload: Dict[str, Any]) -> None:
        logger.info(
            f"Notification | Event: {EventKind(event_kind).value} | Appointment: {appointment_id} | "
            f"Recipients: {','.join(payload.get('recipients', []))}"
        )


class RedisNotifier(NotificationPort):
    """Publishes events as JSON on a redis pub/sub channel for the delivery workers."""

    def __init__(
        self,
        client: RedisClient,
        channel: str = settings.NOTIFICATION_CHANNEL,
        clock: Optional[Clock] = None,
    ):
        self.client = client
        self.channel = channel
        self.clock = clock or SystemClock()

    async def notify(self, event_kind: EventKind, appointment_id: UUID, payload: Dict[str, Any]) -> None:
        message = json.dumps(
            {
                "event": EventKind(event_kind).value,
                "appointment_id": str(appointment_id),
                "emitted_at": self.clock.now().isoformat(),
                "payload": payload,
            },
            default=str,
        )
        await self.client.publish(self.channel, message)


class NotificationDispatcher:
    def __init__(self, port: NotificationPort, timeout: float = settings.NOTIFICATION_TIMEOUT_SECONDS):
        self.port = port
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, event_kind: EventKind, appointment_id: UUID, payload: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Task]:
        """Schedule delivery and return immediately."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Notification dropped, no running loop | Event: {EventKind(event_kind).value}")
            return None
        task = loop.create_task(self._deliver(EventKind(event_kind), appointment_id, payload or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, event_kind: EventKind, appointment_id: UUID, payload: Dict[str, Any]):
        try:
            await asyncio.wait_for(self.port.notify(event_kind, appointment_id, payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"Notification timed out | Event: {event_kind.value} | Appointment: {appointment_id} | "
                f"Timeout: {self.timeout}s"
            )
        except Exception as e:
            logger.error(f"Notification failed | Event: {event_kind.value} | Appointment: {appointment_id} | Error: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for deliveries already scheduled, e.g. on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_notifier(backend: str = settings.NOTIFICATION_BACKEND, clock: Optional[Clock] = None) -> NotificationPort:
    if backend == "redis":
        return RedisNotifier(redis_client, clock=clock)
    if backend != "log":
        logger.warning(f"Unknown notification backend '{backend}', falling back to log")
    return LoggingNotifier()


dispatcher = NotificationDispatcher(build_notifier())
