"""
Values handed back across the service boundary
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar, Union

from backend.errors import BookingError, StorageError
from database import BookingStatus, SeatStatus, Train

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """Tagged outcome of a service operation: either a value or one error"""
    value: Optional[T] = None
    error: Optional[Union[BookingError, StorageError]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> 'Result[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: Union[BookingError, StorageError]) -> 'Result[T]':
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error"""
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class BookingReceipt:
    booking_id: int
    train_id: int
    from_station_id: int
    to_station_id: int
    travel_date: date
    seats_requested: int
    seats_booked: int
    fare_per_seat: Decimal
    total_fare: Decimal
    status: BookingStatus
    seat_numbers: List[int] = field(default_factory=list)


@dataclass
class StationInfo:
    id: int
    name: str
    code: str


@dataclass
class BookingDetail:
    """A booking joined with its train and stations, as shown to its owner"""
    booking_id: int
    train_id: int
    train_number: str
    train_name: str
    fare_per_seat: Decimal
    from_station: StationInfo
    to_station: StationInfo
    travel_date: date
    seats_booked: int
    total_fare: Decimal
    status: BookingStatus
    created_at: Optional[datetime] = None
    seat_numbers: List[int] = field(default_factory=list)


@dataclass
class CancelReceipt:
    booking_id: int
    seats_cancelled: int
    remaining_seats: int
    refund_amount: Decimal
    total_fare: Decimal
    status: BookingStatus
    released_seats: List[int] = field(default_factory=list)

    @property
    def fully_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED


@dataclass
class SeatState:
    seat_number: int
    status: SeatStatus


@dataclass
class SegmentAvailability:
    train_id: int
    travel_date: date
    from_station_id: int
    to_station_id: int
    total_seats: int
    committed_seats: int

    @property
    def available_seats(self) -> int:
        return self.total_seats - self.committed_seats


@dataclass
class TrainSearchResult:
    """A train serving a segment, with its times there and remaining capacity"""
    train: Train
    departure_time: Optional[time]
    arrival_time: Optional[time]
    availability: SegmentAvailability
