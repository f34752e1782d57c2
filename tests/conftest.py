import os
from datetime import datetime, timezone
from typing import Callable, Dict, Generator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_scheduling.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("EVENTS_ENABLED", "false")
os.environ.setdefault("RESERVE_RETRY_BACKOFF_SECONDS", "0.01")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import create_access_token  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.dependencies import get_now  # noqa: E402
from common.models import Booking, BookingStatus, RoleEnum, Vehicle  # noqa: E402
from scheduling.cache import busy_cache  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.vehicles.app import app as vehicles_app  # noqa: E402

# Day 1 08:00 UTC; every test runs with this as "now" unless it says otherwise.
NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)

OWNER_ID = 10
RENTER_ID = 20
OTHER_RENTER_ID = 21
ADMIN_ID = 1


def day(n: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(2030, 1, n, hour, minute, tzinfo=timezone.utc)


def auth_header(user_id: int, role: RoleEnum) -> Dict[str, str]:
    token = create_access_token({"sub": str(user_id), "role": role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    busy_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _pinned_clock() -> Generator[None, None, None]:
    for fastapi_app in (bookings_app, vehicles_app):
        fastapi_app.dependency_overrides[get_now] = lambda: NOW
    yield
    for fastapi_app in (bookings_app, vehicles_app):
        fastapi_app.dependency_overrides.pop(get_now, None)


@pytest.fixture()
def cache_enabled(monkeypatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AVAILABILITY_CACHE_ENABLED", "true")
    reset_settings_cache()
    yield
    monkeypatch.delenv("AVAILABILITY_CACHE_ENABLED")
    reset_settings_cache()


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_vehicle(db_session) -> Callable[..., Vehicle]:
    def factory(owner_id: int = OWNER_ID, **fields) -> Vehicle:
        vehicle = Vehicle(owner_id=owner_id, name=fields.pop("name", "Toyota Axio"), **fields)
        db_session.add(vehicle)
        db_session.commit()
        db_session.refresh(vehicle)
        return vehicle

    return factory


@pytest.fixture()
def make_booking(db_session) -> Callable[..., Booking]:
    """Seed a booking directly, bypassing admission (confirmed unless told otherwise)."""

    def factory(vehicle: Vehicle, start: datetime, end: datetime, renter_id: int = RENTER_ID, **fields) -> Booking:
        fields.setdefault("status", BookingStatus.CONFIRMED.value)
        booking = Booking(vehicle_id=vehicle.id, renter_id=renter_id, start_time=start, end_time=end, **fields)
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking

    return factory


@pytest.fixture()
def owner_headers() -> Dict[str, str]:
    return auth_header(OWNER_ID, RoleEnum.OWNER)


@pytest.fixture()
def renter_headers() -> Dict[str, str]:
    return auth_header(RENTER_ID, RoleEnum.RENTER)


@pytest.fixture()
def other_renter_headers() -> Dict[str, str]:
    return auth_header(OTHER_RENTER_ID, RoleEnum.RENTER)


@pytest.fixture()
def admin_headers() -> Dict[str, str]:
    return auth_header(ADMIN_ID, RoleEnum.ADMIN)


@pytest.fixture()
def vehicles_client() -> Generator[TestClient, None, None]:
    with TestClient(vehicles_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client
