"""
Database models for the railway reservation system
Plain Python classes and enums (no ORM)
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional
import enum


class UserRole(enum.Enum):
    """User role enumeration"""
    ADMIN = "admin"
    USER = "user"


class BookingStatus(enum.Enum):
    """Booking status enumeration"""
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class SeatStatus(enum.Enum):
    """Status of one seat on one travel date"""
    AVAILABLE = "available"
    BOOKED = "booked"


@dataclass
class User:
    """User model for authentication and authorization"""
    id: Optional[int] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    role: Optional[UserRole] = None
    created_at: Optional[datetime] = None

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role={self.role.value if self.role else None})>"


@dataclass
class Station:
    id: Optional[int] = None
    name: Optional[str] = None
    code: Optional[str] = None


@dataclass
class RouteStop:
    """One station on a train's ordered route"""
    station: Station
    sequence_number: int
    arrival_time: Optional[time] = None
    departure_time: Optional[time] = None


@dataclass
class Train:
    """Train with capacity, fare and (optionally loaded) ordered route"""
    id: Optional[int] = None
    train_number: Optional[str] = None
    train_name: Optional[str] = None
    total_seats: Optional[int] = None
    fare: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    # For joined queries
    route: List[RouteStop] = field(default_factory=list)

    def __repr__(self):
        return f"<Train(id={self.id}, number='{self.train_number}', seats={self.total_seats})>"

    @property
    def origin(self) -> Optional[Station]:
        return self.route[0].station if self.route else None

    @property
    def destination(self) -> Optional[Station]:
        return self.route[-1].station if self.route else None


@dataclass(frozen=True)
class Segment:
    """Origin/destination pair along a train's route"""
    train_id: int
    from_station_id: int
    to_station_id: int
    from_sequence: int
    to_sequence: int

    def __post_init__(self):
        if self.from_sequence >= self.to_sequence:
            raise ValueError("Segment origin must come before its destination")


@dataclass
class Booking:
    """Booking model linking a user to seats on a train segment"""
    id: Optional[int] = None
    user_id: Optional[int] = None
    train_id: Optional[int] = None
    from_station_id: Optional[int] = None
    to_station_id: Optional[int] = None
    travel_date: Optional[date] = None
    seats_booked: Optional[int] = None
    total_fare: Optional[Decimal] = None
    status: Optional[BookingStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Seats held through explicit selection, in seat order
    seat_numbers: List[int] = field(default_factory=list)

    def __repr__(self):
        return f"<Booking(id={self.id}, seats={self.seats_booked}, status={self.status.value if self.status else None})>"

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED


def row_to_user(row) -> User:
    """Convert database row to User object"""
    if not row:
        return None
    return User(
        id=row['id'],
        username=row['username'],
        email=row['email'],
        password_hash=row['password_hash'],
        role=UserRole(row['role']) if row['role'] else None,
        created_at=row.get('created_at')
    )


def row_to_station(row) -> Station:
    """Convert database row to Station object"""
    if not row:
        return None
    return Station(id=row['id'], name=row['station_name'], code=row['station_code'])


def row_to_train(row) -> Train:
    """Convert database row to Train object"""
    if not row:
        return None
    return Train(
        id=row['id'],
        train_number=row['train_number'],
        train_name=row['train_name'],
        total_seats=row['total_seats'],
        fare=row['fare'],
        created_at=row.get('created_at')
    )


def row_to_booking(row) -> Booking:
    """Convert database row to Booking object"""
    if not row:
        return None
    return Booking(
        id=row['id'],
        user_id=row['user_id'],
        train_id=row['train_id'],
        from_station_id=row['from_station_id'],
        to_station_id=row['to_station_id'],
        travel_date=row['travel_date'],
        seats_booked=row['seats_booked'],
        total_fare=row['total_fare'],
        status=BookingStatus(row['status']) if row['status'] else None,
        created_at=row.get('created_at'),
        updated_at=row.get('updated_at'),
        seat_numbers=list(row.get('seat_numbers') or [])
    )
