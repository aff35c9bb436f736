import datetime

import pytest

from remindsync import helpers
from remindsync.reminders.controller import ReminderController
from remindsync.reminders.model.localstore import LocalStore
from remindsync.reminders.model.occurrence import OccurrenceCalculator
from remindsync.reminders.model.remote import MemoryRemoteStore
from remindsync.reminders.notifications import NotificationScheduler, ScheduleNotificationBackend
from remindsync.reminders.retry import RetryPolicy
from remindsync.reminders.sync import SyncEngine
from remindsync.session import GuestSession

UTC = datetime.timezone.utc

#: Wednesday 11 March 2026, 10:00 UTC.
FIXED_NOW = datetime.datetime(2026, 3, 11, 10, 0, tzinfo=UTC)


class Clock:
    """
    A clock which only moves when told to.
    """

    def __init__(self, start: datetime.datetime = FIXED_NOW):
        self.current = start

    def __call__(self) -> datetime.datetime:
        return self.current

    def advance(self, **kwargs) -> datetime.datetime:
        self.current += datetime.timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(helpers, 'DATA_LOCATION', tmp_path / 'data')
    return tmp_path / 'data'


@pytest.fixture
def store(tmp_path, clock):
    return LocalStore(tmp_path / 'test.db', clock=clock)


@pytest.fixture
def calculator(clock):
    return OccurrenceCalculator(UTC, clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(base_delay=1.0, max_attempts=3, sleep=sleeps.append, rand=lambda a, b: 0)


@pytest.fixture
def backend(clock):
    return ScheduleNotificationBackend(clock=clock)


@pytest.fixture
def scheduler(store, backend, calculator):
    scheduler = NotificationScheduler(store, backend, calculator, RetryPolicy(sleep=lambda s: None))
    backend.deliver = scheduler.deliver
    return scheduler


@pytest.fixture
def remote():
    return MemoryRemoteStore()


@pytest.fixture
def session():
    return GuestSession('tester')


@pytest.fixture
def engine(store, remote, session, retry_policy):
    return SyncEngine(store, remote, session, retry_policy)


@pytest.fixture
def controller(store, scheduler, engine, calculator):
    return ReminderController(store, scheduler, engine, calculator)
