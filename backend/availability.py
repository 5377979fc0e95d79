"""
Availability calculator
Derives committed and remaining seats from confirmed booking rows.
All reads run on the caller's connection so they share its unit of work.
"""
from datetime import date
from typing import Iterable, List, Set

from psycopg2.extras import RealDictCursor

from database import BookingStatus, Segment, SeatStatus, Train

# Rows written before seats_booked existed count as one seat, as they do on read
_SEATS_EXPR = "COALESCE(NULLIF(seats_booked, 0), 1)"


class AvailabilityCalculator:
    """Seat accounting queries for one train and travel date"""

    @staticmethod
    def committed_seats(conn, train: Train, travel_date: date, segment: Segment) -> int:
        """Sum of seats over confirmed bookings on exactly this segment"""
        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(f"""
                SELECT COALESCE(SUM({_SEATS_EXPR}), 0) AS committed
                FROM bookings
                WHERE train_id = %s
                  AND travel_date = %s
                  AND from_station_id = %s
                  AND to_station_id = %s
                  AND status = %s
            """, (train.id, travel_date, segment.from_station_id,
                  segment.to_station_id, BookingStatus.CONFIRMED.value))
            return int(cursor.fetchone()['committed'])

    @staticmethod
    def available(conn, train: Train, travel_date: date, segment: Segment) -> int:
        """Seats still open on the segment; only trustworthy under the segment lock"""
        return train.total_seats - AvailabilityCalculator.committed_seats(
            conn, train, travel_date, segment
        )

    @staticmethod
    def taken_seats(conn, train: Train, travel_date: date, seat_numbers: Iterable[int]) -> Set[int]:
        """Which of the given seats already have a confirmed booking on the date"""
        seat_numbers = list(seat_numbers)
        if not seat_numbers:
            return set()

        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT s.seat_number
                FROM seat_bookings sb
                JOIN seats s ON s.id = sb.seat_id
                WHERE s.train_id = %s
                  AND s.seat_number = ANY(%s)
                  AND sb.travel_date = %s
                  AND sb.status = %s
            """, (train.id, seat_numbers, travel_date, BookingStatus.CONFIRMED.value))
            return {row['seat_number'] for row in cursor.fetchall()}

    @staticmethod
    def seat_states(conn, train: Train, travel_date: date) -> List[tuple]:
        """(seat_number, SeatStatus) for every seat of the train, in seat order"""
        with conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT s.seat_number,
                       EXISTS (
                           SELECT 1 FROM seat_bookings sb
                           WHERE sb.seat_id = s.id
                             AND sb.travel_date = %s
                             AND sb.status = %s
                       ) AS is_booked
                FROM seats s
                WHERE s.train_id = %s
                ORDER BY s.seat_number
            """, (travel_date, BookingStatus.CONFIRMED.value, train.id))
            return [
                (row['seat_number'], SeatStatus.BOOKED if row['is_booked'] else SeatStatus.AVAILABLE)
                for row in cursor.fetchall()
            ]
