"""Pytest configuration and fixtures."""
import os
import sys
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.booking_service import BookingService
from backend.config import Settings
from backend.ledger import travel_start
from backend.train_service import TrainService
from database import DatabaseManager, UserRole, row_to_user

TRAVEL_DATE = date(2030, 1, 15)
NOW = datetime(2030, 1, 1, 9, 30, tzinfo=timezone.utc)

ROUTE = [
    {'name': 'New Delhi', 'code': 'NDLS', 'arrival_time': None, 'departure_time': '16:55'},
    {'name': 'Kota Junction', 'code': 'KOTA', 'arrival_time': '21:40', 'departure_time': '21:50'},
    {'name': 'Mumbai Central', 'code': 'MMCT', 'arrival_time': '08:35', 'departure_time': None},
]


class FixedClock:
    """Clock returning a settable instant"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def hours_before_travel(self, travel_date: date, hours: int, minutes: int = 0):
        self.now = travel_start(travel_date) - timedelta(hours=hours, minutes=minutes)


def create_user_directly(db, username: str, role: UserRole = UserRole.USER):
    """Create a user directly in the database without hashing a password."""
    with db.get_cursor() as cursor:
        cursor.execute("""
            INSERT INTO users (username, email, password_hash, role)
            VALUES (%s, %s, %s, %s)
            RETURNING id, username, email, password_hash, role, created_at
        """, (username, f'{username}@example.com', 'not_used', role.value))
        return row_to_user(cursor.fetchone())


def station_ids(train):
    """Map station code to station id along the train's route."""
    return {stop.station.code: stop.station.id for stop in train.route}


def fetch_booking_row(db, booking_id):
    """Read a booking row together with its train's fare."""
    with db.get_cursor() as cursor:
        cursor.execute("""
            SELECT b.*, t.fare
            FROM bookings b
            JOIN trains t ON t.id = b.train_id
            WHERE b.id = %s
        """, (booking_id,))
        return cursor.fetchone()


def assert_fare_consistent(db, booking_id):
    """A confirmed booking always costs seats_booked times the train fare."""
    row = fetch_booking_row(db, booking_id)
    if row['status'] == 'confirmed':
        assert row['seats_booked'] > 0
        assert row['total_fare'] == row['seats_booked'] * row['fare']
    return row


@pytest.fixture(scope='function')
def settings():
    return Settings(
        cancellation_window_hours=24,
        max_seats_per_booking=6,
        default_fare=Decimal('100.00'),
    )


@pytest.fixture(scope='function')
def db_manager():
    """Create a test database manager with PostgreSQL test database."""
    test_db_url = os.getenv('TEST_DATABASE_URL', 'postgresql://localhost/railway_reservation_test')
    try:
        db = DatabaseManager(database_url=test_db_url, min_connections=1, max_connections=40)
    except RuntimeError as e:
        pytest.skip(f"PostgreSQL test database not reachable: {e}")

    db.drop_tables()  # Clean slate for each test
    db.create_tables()
    yield db
    db.drop_tables()  # Cleanup after test
    db.close_all_connections()


@pytest.fixture(scope='function')
def clock():
    return FixedClock(NOW)


@pytest.fixture(scope='function')
def train_service(db_manager, settings):
    return TrainService(db_manager, settings)


@pytest.fixture(scope='function')
def booking_service(db_manager, settings, clock):
    return BookingService(db_manager, settings=settings, clock=clock)


@pytest.fixture(scope='function')
def alice(db_manager):
    return create_user_directly(db_manager, 'alice')


@pytest.fixture(scope='function')
def bob(db_manager):
    return create_user_directly(db_manager, 'bob')


@pytest.fixture(scope='function')
def test_train(train_service):
    """A five-seat train over three stations at 100.00 per seat"""
    return train_service.create_train(
        train_number='12951',
        train_name='Mumbai Rajdhani',
        total_seats=5,
        stations=ROUTE,
        fare=Decimal('100.00'),
    )


@pytest.fixture(scope='function')
def stations(test_train):
    return station_ids(test_train)
