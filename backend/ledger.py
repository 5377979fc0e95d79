"""
Seat/booking ledger
Every write to ``bookings`` and ``seat_bookings`` goes through one of the
guarded transitions below. Each transition runs on the caller's connection:
it locks its capacity keys, evaluates its guard on reads taken after the
locks, and writes, all inside the caller's single transaction. A guard
failure raises before anything is written.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from psycopg2.extras import RealDictCursor

from backend.availability import AvailabilityCalculator
from backend.errors import (
    CapacityError, NotFoundError, OverCancelError, ValidationError, WindowViolationError
)
from backend.fare import calculate_fare
from database import Booking, BookingStatus, Segment, Train, row_to_booking

logger = logging.getLogger(__name__)

CONFIRMED = BookingStatus.CONFIRMED.value
CANCELLED = BookingStatus.CANCELLED.value

_BOOKING_COLS = """b.id, b.user_id, b.train_id, b.from_station_id, b.to_station_id,
    b.travel_date, b.seats_booked, b.total_fare, b.status, b.created_at, b.updated_at"""


class CapacityKey:
    """Scope under which admissions compete for the same capacity"""

    def lock_name(self) -> str:
        raise NotImplementedError

    def lock_id(self) -> int:
        """Signed 64-bit advisory lock key derived from the lock name"""
        digest = hashlib.blake2b(self.lock_name().encode('utf-8'), digest_size=8).digest()
        return int.from_bytes(digest, 'big', signed=True)


@dataclass(frozen=True)
class SegmentKey(CapacityKey):
    train_id: int
    travel_date: date
    from_station_id: int
    to_station_id: int

    def lock_name(self) -> str:
        return (f"segment:{self.train_id}:{self.travel_date.isoformat()}:"
                f"{self.from_station_id}:{self.to_station_id}")


@dataclass(frozen=True)
class SeatKey(CapacityKey):
    train_id: int
    travel_date: date
    seat_number: int

    def lock_name(self) -> str:
        return f"seat:{self.train_id}:{self.travel_date.isoformat()}:{self.seat_number}"


@dataclass
class Cancellation:
    booking: Booking
    seats_cancelled: int
    refund_amount: Decimal
    released_seats: List[int]


def travel_start(travel_date: date) -> datetime:
    """The instant a travel date begins, used for the cancellation window"""
    return datetime.combine(travel_date, time.min, tzinfo=timezone.utc)


class Ledger:
    """Guarded transitions over booking and seat-booking rows"""

    def __init__(self, availability: AvailabilityCalculator = None,
                 cancellation_window_hours: int = 24,
                 max_seats_per_booking: Optional[int] = None):
        self.availability = availability or AvailabilityCalculator()
        self.cancellation_window_hours = cancellation_window_hours
        self.max_seats_per_booking = max_seats_per_booking

    @staticmethod
    def lock(conn, keys: Iterable[CapacityKey]) -> None:
        """
        Take transaction-scoped advisory locks for the keys

        Locks are taken in ascending lock-id order, the same order the
        server sees, so two admissions sharing keys never wait on each other
        in opposite orders. They are released by the commit or rollback that
        ends the transaction.
        """
        lock_ids = sorted({key.lock_id() for key in keys})
        with conn.cursor() as cursor:
            for lock_id in lock_ids:
                cursor.execute("SELECT pg_advisory_xact_lock(%s)", (lock_id,))

    def admit(self, conn, user_id: int, train: Train, segment: Segment,
              travel_date: date, seat_count: int) -> Booking:
        """
        Admit ``seat_count`` seats on a segment without choosing seats

        The caller's existing confirmed count booking for the same
        user/train/date/segment grows instead of a second row being created.

        Returns:
            The booking as stored after the admission

        Raises:
            CapacityError: If fewer than ``seat_count`` seats remain
            ValidationError: If the grown booking would exceed the per-booking maximum
        """
        # Rejects non-positive counts before any lock is taken
        calculate_fare(train, seat_count)
        key = SegmentKey(train.id, travel_date, segment.from_station_id, segment.to_station_id)
        self.lock(conn, [key])

        available = self.availability.available(conn, train, travel_date, segment)
        if seat_count > available:
            raise CapacityError(
                f"Only {max(available, 0)} seat(s) available, {seat_count} requested",
                available=max(available, 0),
            )

        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(f"""
                SELECT {_BOOKING_COLS}
                FROM bookings b
                WHERE b.user_id = %s
                  AND b.train_id = %s
                  AND b.travel_date = %s
                  AND b.from_station_id = %s
                  AND b.to_station_id = %s
                  AND b.status = %s
                  AND NOT EXISTS (SELECT 1 FROM seat_bookings sb WHERE sb.booking_id = b.id)
                ORDER BY b.id
                LIMIT 1
                FOR UPDATE OF b
            """, (user_id, train.id, travel_date, segment.from_station_id,
                  segment.to_station_id, CONFIRMED))
            existing = row_to_booking(cursor.fetchone())

            if existing is not None:
                seats_booked = (existing.seats_booked or 1) + seat_count
                if self.max_seats_per_booking and seats_booked > self.max_seats_per_booking:
                    raise ValidationError(
                        f"Booking {existing.id} would hold {seats_booked} seats; "
                        f"at most {self.max_seats_per_booking} are allowed per booking"
                    )
                cursor.execute(f"""
                    UPDATE bookings b
                    SET seats_booked = %s, total_fare = %s, updated_at = NOW()
                    WHERE b.id = %s
                    RETURNING {_BOOKING_COLS}
                """, (seats_booked, calculate_fare(train, seats_booked), existing.id))
            else:
                cursor.execute(f"""
                    INSERT INTO bookings AS b
                    (user_id, train_id, from_station_id, to_station_id, travel_date,
                     seats_booked, total_fare, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_BOOKING_COLS}
                """, (user_id, train.id, segment.from_station_id, segment.to_station_id,
                      travel_date, seat_count, calculate_fare(train, seat_count), CONFIRMED))
            booking = row_to_booking(cursor.fetchone())

        logger.info("Admitted %d seat(s) on train %s for %s (booking now %d seat(s))",
                    seat_count, train.train_number, travel_date, booking.seats_booked,
                    extra={'user_id': user_id, 'train_id': train.id, 'booking_id': booking.id})
        return booking

    def admit_seats(self, conn, user_id: int, train: Train, segment: Segment,
                    travel_date: date, seat_numbers: Sequence[int]) -> Booking:
        """
        Admit an explicit selection of seats as one new booking

        Raises:
            ValidationError: If the selection is empty or repeats a seat
            NotFoundError: If a seat does not exist on the train
            CapacityError: If any seat is already booked for the date (all
                taken seats are listed) or the segment is full
        """
        seat_numbers = list(seat_numbers)
        if not seat_numbers:
            raise ValidationError("Select at least one seat")
        if len(set(seat_numbers)) != len(seat_numbers):
            raise ValidationError("A seat can be selected only once per booking")
        seat_numbers.sort()

        keys = [SegmentKey(train.id, travel_date, segment.from_station_id, segment.to_station_id)]
        keys += [SeatKey(train.id, travel_date, n) for n in seat_numbers]
        self.lock(conn, keys)

        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT id, seat_number
                FROM seats
                WHERE train_id = %s AND seat_number = ANY(%s)
                ORDER BY seat_number
            """, (train.id, seat_numbers))
            seat_ids = {row['seat_number']: row['id'] for row in cursor.fetchall()}

        unknown = [n for n in seat_numbers if n not in seat_ids]
        if unknown:
            raise NotFoundError(
                f"Seat(s) {', '.join(map(str, unknown))} do not exist on train {train.train_number}"
            )

        taken = self.availability.taken_seats(conn, train, travel_date, seat_numbers)
        if taken:
            raise CapacityError(
                f"Seat(s) {', '.join(map(str, sorted(taken)))} already booked for {travel_date}",
                taken_seats=taken,
            )

        available = self.availability.available(conn, train, travel_date, segment)
        if len(seat_numbers) > available:
            raise CapacityError(
                f"Only {max(available, 0)} seat(s) available, {len(seat_numbers)} requested",
                available=max(available, 0),
            )

        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(f"""
                INSERT INTO bookings AS b
                (user_id, train_id, from_station_id, to_station_id, travel_date,
                 seats_booked, total_fare, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_BOOKING_COLS}
            """, (user_id, train.id, segment.from_station_id, segment.to_station_id,
                  travel_date, len(seat_numbers), calculate_fare(train, len(seat_numbers)),
                  CONFIRMED))
            booking = row_to_booking(cursor.fetchone())

            for n in seat_numbers:
                cursor.execute("""
                    INSERT INTO seat_bookings (booking_id, seat_id, travel_date, status)
                    VALUES (%s, %s, %s, %s)
                """, (booking.id, seat_ids[n], travel_date, CONFIRMED))
            booking.seat_numbers = seat_numbers

        logger.info("Admitted seats %s on train %s for %s",
                    seat_numbers, train.train_number, travel_date,
                    extra={'user_id': user_id, 'train_id': train.id, 'booking_id': booking.id})
        return booking

    def cancel(self, conn, user_id: int, booking_id: int, seats_to_cancel: int,
               now: datetime) -> Cancellation:
        """
        Cancel some or all seats of a confirmed booking owned by the user

        Cancelling every remaining seat moves the booking to cancelled; fewer
        seats shrink it and recompute its fare. Seats held by selection are
        released from the highest seat number down.

        Raises:
            ValidationError: If seats_to_cancel is not positive
            NotFoundError: If the booking is absent, foreign or already cancelled
            WindowViolationError: If travel starts in under the window
            OverCancelError: If more seats are cancelled than booked
        """
        if isinstance(seats_to_cancel, bool) or not isinstance(seats_to_cancel, int) \
                or seats_to_cancel < 1:
            raise ValidationError(f"Seats to cancel must be a positive integer, got {seats_to_cancel!r}")

        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(f"""
                SELECT {_BOOKING_COLS}, t.train_number, t.train_name, t.total_seats, t.fare
                FROM bookings b
                JOIN trains t ON t.id = b.train_id
                WHERE b.id = %s AND b.user_id = %s AND b.status = %s
                FOR UPDATE OF b
            """, (booking_id, user_id, CONFIRMED))
            row = cursor.fetchone()

            if row is None:
                raise NotFoundError("Booking not found or already cancelled")

            booking = row_to_booking(row)
            train = Train(id=row['train_id'], train_number=row['train_number'],
                          train_name=row['train_name'], total_seats=row['total_seats'],
                          fare=row['fare'])

            hours_remaining = (travel_start(booking.travel_date) - now).total_seconds() / 3600
            if hours_remaining < self.cancellation_window_hours:
                raise WindowViolationError(
                    f"Bookings can only be cancelled at least {self.cancellation_window_hours} "
                    f"hours before the travel date",
                    hours_remaining=hours_remaining,
                )

            seats_booked = booking.seats_booked or 1
            if seats_to_cancel > seats_booked:
                raise OverCancelError(
                    f"Cannot cancel more seats than booked. You have {seats_booked} seat(s) booked.",
                    seats_booked=seats_booked,
                )

            remaining = seats_booked - seats_to_cancel
            if remaining == 0:
                cursor.execute(f"""
                    UPDATE bookings b
                    SET status = %s, updated_at = NOW()
                    WHERE b.id = %s
                    RETURNING {_BOOKING_COLS}
                """, (CANCELLED, booking.id))
            else:
                cursor.execute(f"""
                    UPDATE bookings b
                    SET seats_booked = %s, total_fare = %s, updated_at = NOW()
                    WHERE b.id = %s
                    RETURNING {_BOOKING_COLS}
                """, (remaining, calculate_fare(train, remaining), booking.id))
            updated = row_to_booking(cursor.fetchone())

            # Highest seats first; a full cancel releases every held seat
            cursor.execute("""
                UPDATE seat_bookings sb
                SET status = %s
                FROM seats s
                WHERE s.id = sb.seat_id
                  AND sb.id IN (
                      SELECT held.id
                      FROM seat_bookings held
                      JOIN seats hs ON hs.id = held.seat_id
                      WHERE held.booking_id = %s AND held.status = %s
                      ORDER BY hs.seat_number DESC
                      LIMIT %s
                  )
                RETURNING s.seat_number
            """, (CANCELLED, booking.id, CONFIRMED,
                  None if remaining == 0 else seats_to_cancel))
            released = sorted(r['seat_number'] for r in cursor.fetchall())

            cursor.execute("""
                SELECT s.seat_number
                FROM seat_bookings sb
                JOIN seats s ON s.id = sb.seat_id
                WHERE sb.booking_id = %s AND sb.status = %s
                ORDER BY s.seat_number
            """, (booking.id, CONFIRMED))
            updated.seat_numbers = [r['seat_number'] for r in cursor.fetchall()]

        logger.info("Cancelled %d of %d seat(s)", seats_to_cancel, seats_booked,
                    extra={'user_id': user_id, 'train_id': train.id, 'booking_id': booking.id})
        return Cancellation(
            booking=updated,
            seats_cancelled=seats_to_cancel,
            refund_amount=calculate_fare(train, seats_to_cancel),
            released_seats=released,
        )

    @staticmethod
    def repair_seat_counts(conn, user_id: int) -> int:
        """
        Persist one seat on the user's rows that carry no seat count

        Confirmed rows also get their fare realigned with the single seat.
        Rows that already have a count are untouched, so repeating it is a no-op.

        Returns:
            Number of rows repaired
        """
        with conn.cursor() as cursor:
            cursor.execute("""
                UPDATE bookings b
                SET seats_booked = 1,
                    total_fare = CASE WHEN b.status = %s THEN t.fare ELSE b.total_fare END,
                    updated_at = NOW()
                FROM trains t
                WHERE t.id = b.train_id
                  AND b.user_id = %s
                  AND (b.seats_booked IS NULL OR b.seats_booked = 0)
            """, (CONFIRMED, user_id))
            repaired = cursor.rowcount

        if repaired:
            logger.info("Repaired seat count on %d legacy booking(s)", repaired,
                        extra={'user_id': user_id})
        return repaired
