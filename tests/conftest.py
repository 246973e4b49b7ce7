"""Pytest configuration and fixtures."""

from datetime import datetime, time, timedelta, timezone

import pytest

from careslot.config import Settings
from careslot.scheduling.models import Provider, WeeklyAvailability
from careslot.scheduling.repository import InMemorySchedulingRepository
from careslot.scheduling.service import SchedulingService

# Sunday noon UTC; the first bookable weekday is Monday 2026-03-02.
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock handed to the service in place of ``datetime.now``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        event_log_enabled=False,
        event_log_dir=tmp_path / "events",
    )


@pytest.fixture
def provider():
    """Mon-Fri 09:00-17:00 provider in UTC."""
    return Provider(
        id="prov-1",
        name="Dr. Rivera",
        availability=WeeklyAvailability.uniform(time(9, 0), time(17, 0)),
    )


@pytest.fixture
def repo():
    return InMemorySchedulingRepository()


@pytest.fixture
async def service(repo, provider, settings, clock):
    svc = SchedulingService(repo, settings=settings, clock=clock)
    await svc.register_provider(provider)
    return svc
