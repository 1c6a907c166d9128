from datetime import datetime, time, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.clock import FixedClock
from app.db.session import init_db, make_session_factory
from app.services.appointment_store import AppointmentStore
from app.services.booking_service import BookingService
from app.services.integrity_service import IntegrityService
from app.services.notification_service import NotificationDispatcher, NotificationPort
from app.services.reschedule_service import RescheduleService
from app.services.slot_store import SlotStore

# Wednesday morning, so T+1d and T+2d are business days
NOW = datetime(2026, 1, 7, 8, 0)


class RecordingNotifier(NotificationPort):
    def __init__(self):
        self.events = []

    async def notify(self, event_kind, appointment_id, payload):
        self.events.append((event_kind, appointment_id, payload))

    def kinds(self):
        return [kind.value for kind, _, _ in self.events]


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File backed so concurrent sessions see each other's writes
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'careslot_test.db'}",
        connect_args={"timeout": 30},
    )
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def notifier(recorder):
    return NotificationDispatcher(recorder, timeout=1)


@pytest.fixture
def appointments(session_factory, clock):
    return AppointmentStore(session_factory, clock)


@pytest.fixture
def slots(session_factory, clock, appointments):
    return SlotStore(session_factory, clock, is_referenced=appointments.has_live_reference, page_size=3)


@pytest.fixture
def booking(slots, appointments, notifier):
    return BookingService(slots, appointments, notifier)


@pytest.fixture
def rescheduling(slots, appointments, notifier):
    return RescheduleService(slots, appointments, notifier)


@pytest.fixture
def integrity(session_factory, clock):
    return IntegrityService(session_factory, clock)


@pytest.fixture
def provider_id():
    return uuid4()


@pytest.fixture
def patient_id():
    return uuid4()


@pytest_asyncio.fixture
async def day_slots(slots, provider_id):
    """Slots at T+1d 09:00 and 14:00."""
    tomorrow = (NOW + timedelta(days=1)).date()
    created = await slots.generate(provider_id, tomorrow, 1, [time(9, 0), time(14, 0)], fee_range=(50, 50))
    return sorted(created, key=lambda s: s.start_time)
