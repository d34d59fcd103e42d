"""
Shared fixtures: a throwaway SQLite database per test and a controllable clock.
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from reservation_service.config import Settings
from reservation_service.database import create_engine, create_session_factory, init_db
from reservation_service.inventory_reservation import ReservationManager

CRON_SECRET = "test-cron-secret-0123"


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        cron_secret=CRON_SECRET,
        cache_enabled=False,
        kafka_enabled=False,
        lock_timeout_seconds=10.0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def manager(session_factory, settings, clock):
    return ReservationManager(session_factory, settings=settings, clock=clock)


@pytest.fixture
def stock(manager):
    """Seed on-hand quantity for a product/variant."""
    async def _stock(product_id: str, quantity: int, variant_id: str = None):
        return await manager.adjust_stock(product_id, quantity, operation="set", variant_id=variant_id)
    return _stock
