"""
Booking service
Runs every operation as one unit of work on an explicitly passed
DatabaseManager and hands back a Result instead of raising
"""
import logging
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extensions import TransactionRollbackError
from psycopg2.extras import RealDictCursor

from backend.availability import AvailabilityCalculator
from backend.config import Settings
from backend.errors import BookingError, ConflictError, NotFoundError, StorageError, ValidationError
from backend.fare import fare_per_seat
from backend.ledger import Ledger
from backend.results import (
    BookingDetail, BookingReceipt, CancelReceipt, Result, SeatState,
    SegmentAvailability, StationInfo
)
from backend.train_service import fetch_train, resolve_segment
from database import BookingStatus, DatabaseManager, Train

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_DETAIL_QUERY = """
    SELECT
        b.id, b.user_id, b.train_id, b.from_station_id, b.to_station_id,
        b.travel_date, b.seats_booked, b.total_fare, b.status, b.created_at,
        t.train_number, t.train_name, t.fare AS train_fare,
        s1.station_name AS from_station_name, s1.station_code AS from_station_code,
        s2.station_name AS to_station_name, s2.station_code AS to_station_code,
        ARRAY(
            SELECT st.seat_number
            FROM seat_bookings sb
            JOIN seats st ON st.id = sb.seat_id
            WHERE sb.booking_id = b.id AND sb.status = 'confirmed'
            ORDER BY st.seat_number
        ) AS seat_numbers
    FROM bookings b
    JOIN trains t ON t.id = b.train_id
    JOIN stations s1 ON s1.id = b.from_station_id
    JOIN stations s2 ON s2.id = b.to_station_id
    WHERE b.user_id = %s
"""


def _row_to_detail(row) -> BookingDetail:
    return BookingDetail(
        booking_id=row['id'],
        train_id=row['train_id'],
        train_number=row['train_number'],
        train_name=row['train_name'],
        fare_per_seat=row['train_fare'],
        from_station=StationInfo(row['from_station_id'], row['from_station_name'],
                                 row['from_station_code']),
        to_station=StationInfo(row['to_station_id'], row['to_station_name'],
                               row['to_station_code']),
        travel_date=row['travel_date'],
        seats_booked=row['seats_booked'] or 1,
        total_fare=row['total_fare'],
        status=BookingStatus(row['status']),
        created_at=row.get('created_at'),
        seat_numbers=list(row['seat_numbers'] or []),
    )


class BookingService:
    """Service for booking operations with transaction safety"""

    def __init__(self, db_manager: DatabaseManager, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = utc_now, ledger: Optional[Ledger] = None):
        """
        Args:
            db_manager: Storage session handle every unit of work borrows from
            settings: Booking limits and cancellation window
            clock: Returns the current timezone-aware time
            ledger: Guarded transitions; built from settings when omitted
        """
        self.db = db_manager
        self.settings = settings or Settings.from_env()
        self.clock = clock
        self.availability_calculator = AvailabilityCalculator()
        self.ledger = ledger or Ledger(
            availability=self.availability_calculator,
            cancellation_window_hours=self.settings.cancellation_window_hours,
            max_seats_per_booking=self.settings.max_seats_per_booking,
        )

    def _execute(self, operation: str, func, *args) -> Result:
        """Run one operation and turn every failure into a tagged result"""
        try:
            return Result.success(func(*args))
        except BookingError as e:
            logger.info("%s rejected (%s): %s", operation, e.code, e.message)
            return Result.failure(e)
        except (TransactionRollbackError, pg_errors.UniqueViolation) as e:
            logger.warning("%s aborted by a concurrent write: %s", operation, e)
            return Result.failure(ConflictError(
                "The booking could not be completed due to a concurrent update. Please try again."
            ))
        except psycopg2.Error as e:
            logger.exception("%s failed in the database", operation)
            return Result.failure(StorageError(f"{operation} failed: {e}"))

    def _selection(self, seats):
        """Split the request into (seat count, explicit seat numbers or None)"""
        limit = self.settings.max_seats_per_booking

        if isinstance(seats, bool) or isinstance(seats, (str, bytes)):
            raise ValidationError(f"Invalid seat request {seats!r}")

        if isinstance(seats, int):
            if seats < 1:
                raise ValidationError("At least one seat must be booked")
            if seats > limit:
                raise ValidationError(f"Cannot book more than {limit} seats at once")
            return seats, None

        if isinstance(seats, Iterable):
            seat_numbers = list(seats)
            if not seat_numbers:
                raise ValidationError("Select at least one seat")
            if any(isinstance(n, bool) or not isinstance(n, int) or n < 1 for n in seat_numbers):
                raise ValidationError("Seat numbers must be positive integers")
            if len(seat_numbers) > limit:
                raise ValidationError(f"Cannot book more than {limit} seats at once")
            return len(seat_numbers), seat_numbers

        raise ValidationError(f"Invalid seat request {seats!r}")

    @staticmethod
    def _check_travel_date(travel_date) -> date:
        # datetime is a date subclass but does not compare with one
        if isinstance(travel_date, datetime) or not isinstance(travel_date, date):
            raise ValidationError(f"Travel date must be a date, got {travel_date!r}")
        return travel_date

    def book(self, user_id: int, train_id: int, from_station_id: int, to_station_id: int,
             travel_date: date, seats=1) -> Result:
        """
        Book seats on a train segment for a travel date

        Args:
            user_id: Verified caller
            train_id: Train ID
            from_station_id: Boarding station
            to_station_id: Alighting station, later on the route
            travel_date: Date of travel
            seats: Number of seats, or an iterable of seat numbers to book
                those exact seats

        Returns:
            Result carrying a BookingReceipt, or ValidationError,
            NotFoundError, CapacityError, ConflictError or StorageError
        """
        return self._execute('book', self._book, user_id, train_id, from_station_id,
                             to_station_id, travel_date, seats)

    def _book(self, user_id, train_id, from_station_id, to_station_id, travel_date, seats):
        seat_count, seat_numbers = self._selection(seats)
        if self._check_travel_date(travel_date) < self.clock().date():
            raise ValidationError("Cannot book for past dates")

        with self.db.transaction() as conn:
            train = fetch_train(conn, train_id, lock=True)
            segment = resolve_segment(conn, train.id, from_station_id, to_station_id)

            if seat_numbers is None:
                booking = self.ledger.admit(conn, user_id, train, segment, travel_date, seat_count)
            else:
                booking = self.ledger.admit_seats(conn, user_id, train, segment,
                                                  travel_date, seat_numbers)

        return BookingReceipt(
            booking_id=booking.id,
            train_id=train.id,
            from_station_id=segment.from_station_id,
            to_station_id=segment.to_station_id,
            travel_date=booking.travel_date,
            seats_requested=seat_count,
            seats_booked=booking.seats_booked,
            fare_per_seat=fare_per_seat(train),
            total_fare=booking.total_fare,
            status=booking.status,
            seat_numbers=booking.seat_numbers,
        )

    def get_booking(self, user_id: int, booking_id: int) -> Result:
        """Get one of the caller's bookings with train and station details"""
        return self._execute('get_booking', self._get_booking, user_id, booking_id)

    def _get_booking(self, user_id, booking_id):
        with self.db.get_cursor() as cursor:
            cursor.execute(_DETAIL_QUERY + " AND b.id = %s", (user_id, booking_id))
            row = cursor.fetchone()

        if row is None:
            raise NotFoundError("Booking not found")
        return _row_to_detail(row)

    def list_bookings(self, user_id: int) -> Result:
        """
        List the caller's bookings, latest travel date first

        Rows without a seat count are stored as one seat before they are read.
        """
        return self._execute('list_bookings', self._list_bookings, user_id)

    def _list_bookings(self, user_id) -> List[BookingDetail]:
        with self.db.transaction() as conn:
            self.ledger.repair_seat_counts(conn, user_id)
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(_DETAIL_QUERY + " ORDER BY b.travel_date DESC, b.id DESC",
                               (user_id,))
                return [_row_to_detail(row) for row in cursor.fetchall()]

    def cancel(self, user_id: int, booking_id: int, seats_to_cancel: int = 1) -> Result:
        """
        Cancel seats of a confirmed booking

        Returns:
            Result carrying a CancelReceipt with the advisory refund, or
            NotFoundError, WindowViolationError, OverCancelError,
            ValidationError, ConflictError or StorageError
        """
        return self._execute('cancel', self._cancel, user_id, booking_id, seats_to_cancel)

    def _cancel(self, user_id, booking_id, seats_to_cancel):
        with self.db.transaction() as conn:
            cancellation = self.ledger.cancel(conn, user_id, booking_id, seats_to_cancel,
                                              now=self.clock())

        booking = cancellation.booking
        remaining = booking.seats_booked if booking.is_confirmed else 0
        return CancelReceipt(
            booking_id=booking.id,
            seats_cancelled=cancellation.seats_cancelled,
            remaining_seats=remaining,
            refund_amount=cancellation.refund_amount,
            total_fare=booking.total_fare,
            status=booking.status,
            released_seats=cancellation.released_seats,
        )

    def seat_availability(self, train_id: int, travel_date: date) -> Result:
        """Every seat of the train with its status on the date, by seat number"""
        return self._execute('seat_availability', self._seat_availability, train_id, travel_date)

    def _seat_availability(self, train_id, travel_date):
        self._check_travel_date(travel_date)
        with self.db.transaction() as conn:
            train = fetch_train(conn, train_id)
            states = self.availability_calculator.seat_states(conn, train, travel_date)
        return [SeatState(seat_number=n, status=status) for n, status in states]

    def availability(self, train_id: int, travel_date: date, from_station_id: int,
                     to_station_id: int) -> Result:
        """Capacity, committed and remaining seats on one segment"""
        return self._execute('availability', self._availability, train_id, travel_date,
                             from_station_id, to_station_id)

    def _availability(self, train_id, travel_date, from_station_id, to_station_id):
        self._check_travel_date(travel_date)
        with self.db.transaction() as conn:
            train: Train = fetch_train(conn, train_id)
            segment = resolve_segment(conn, train.id, from_station_id, to_station_id)
            committed = self.availability_calculator.committed_seats(conn, train, travel_date, segment)
        return SegmentAvailability(
            train_id=train.id,
            travel_date=travel_date,
            from_station_id=from_station_id,
            to_station_id=to_station_id,
            total_seats=train.total_seats,
            committed_seats=committed,
        )
