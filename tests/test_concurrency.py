"""
Concurrency tests for simultaneous booking scenarios
Tests that admissions never oversell a segment or double-book a seat
"""
from __future__ import annotations

import sys
from pathlib import Path

import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.errors import CapacityError
from backend.ledger import Ledger, SeatKey, SegmentKey
from tests.conftest import TRAVEL_DATE, assert_fare_consistent, create_user_directly

BARRIER_TIMEOUT = 30
RESULT_TIMEOUT = 60


def create_users(db_manager, count, prefix='user'):
    """Helper to create several booking users"""
    return [create_user_directly(db_manager, f'{prefix}{i}') for i in range(count)]


def run_together(tasks):
    """Start every task at the same moment and collect the results in order"""
    barrier = threading.Barrier(len(tasks))

    def start(task):
        barrier.wait(timeout=BARRIER_TIMEOUT)
        return task()

    with ThreadPoolExecutor(max_workers=len(tasks)) as executor:
        futures = [executor.submit(start, task) for task in tasks]
        return [future.result(timeout=RESULT_TIMEOUT) for future in futures]


def assert_ledger_consistent(db_manager, train):
    """No segment is oversold and no seat is held twice on a date"""
    with db_manager.get_cursor() as cursor:
        cursor.execute("""
            SELECT from_station_id, to_station_id, travel_date,
                   SUM(COALESCE(NULLIF(seats_booked, 0), 1)) AS committed
            FROM bookings
            WHERE train_id = %s AND status = 'confirmed'
            GROUP BY from_station_id, to_station_id, travel_date
        """, (train.id,))
        for row in cursor.fetchall():
            assert row['committed'] <= train.total_seats

        cursor.execute("""
            SELECT sb.seat_id, sb.travel_date, COUNT(*) AS holders
            FROM seat_bookings sb
            WHERE sb.status = 'confirmed'
            GROUP BY sb.seat_id, sb.travel_date
            HAVING COUNT(*) > 1
        """)
        assert cursor.fetchall() == []

        cursor.execute("""
            SELECT b.id, b.seats_booked,
                   (SELECT COUNT(*) FROM seat_bookings sb
                    WHERE sb.booking_id = b.id AND sb.status = 'confirmed') AS held
            FROM bookings b
            WHERE b.train_id = %s AND b.status = 'confirmed'
              AND EXISTS (SELECT 1 FROM seat_bookings sb WHERE sb.booking_id = b.id)
        """, (train.id,))
        for row in cursor.fetchall():
            assert row['held'] == row['seats_booked']


class TestConcurrentBooking:
    """Test concurrent booking operations"""

    def test_race_for_last_seats(self, db_manager, booking_service, test_train, stations):
        """Twenty users race for five seats; exactly five win"""
        users = create_users(db_manager, 20)

        results = run_together([
            (lambda user=user: booking_service.book(
                user.id, test_train.id, stations['NDLS'], stations['MMCT'], TRAVEL_DATE, 1
            ))
            for user in users
        ])

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 5
        assert len(losers) == 15
        assert all(isinstance(r.error, CapacityError) for r in losers)

        availability = booking_service.availability(test_train.id, TRAVEL_DATE,
                                                    stations['NDLS'], stations['MMCT']).unwrap()
        assert availability.committed_seats == 5
        assert availability.available_seats == 0
        assert_ledger_consistent(db_manager, test_train)

    def test_same_user_requests_aggregate(self, db_manager, booking_service, test_train,
                                          stations, alice):
        """Concurrent count bookings from one user grow a single booking"""
        results = run_together([
            (lambda: booking_service.book(
                alice.id, test_train.id, stations['NDLS'], stations['MMCT'], TRAVEL_DATE, 1
            ))
            for _ in range(8)
        ])

        assert sum(1 for r in results if r.ok) == 5
        booking_ids = {r.value.booking_id for r in results if r.ok}
        assert len(booking_ids) == 1

        booking_id = booking_ids.pop()
        row = assert_fare_consistent(db_manager, booking_id)
        assert row['seats_booked'] == 5

    def test_independent_segments_fill_independently(self, db_manager, booking_service,
                                                     test_train, stations):
        users = create_users(db_manager, 10)
        segments = [('NDLS', 'KOTA'), ('KOTA', 'MMCT')]

        results = run_together([
            (lambda user=user, seg=segments[i % 2]: booking_service.book(
                user.id, test_train.id, stations[seg[0]], stations[seg[1]], TRAVEL_DATE, 1
            ))
            for i, user in enumerate(users)
        ])

        assert all(r.ok for r in results)
        assert_ledger_consistent(db_manager, test_train)


class TestConcurrentSeatSelection:
    """Test concurrent bookings of explicit seats"""

    def test_many_users_one_seat(self, db_manager, booking_service, test_train, stations):
        users = create_users(db_manager, 12)

        results = run_together([
            (lambda user=user: booking_service.book(
                user.id, test_train.id, stations['NDLS'], stations['MMCT'], TRAVEL_DATE, [1]
            ))
            for user in users
        ])

        assert sum(1 for r in results if r.ok) == 1
        for result in results:
            if not result.ok:
                assert isinstance(result.error, CapacityError)
                assert result.error.taken_seats == [1]
        assert_ledger_consistent(db_manager, test_train)

    def test_overlapping_selections(self, db_manager, booking_service, test_train, stations,
                                    alice, bob):
        """Selections sharing seat 2 cannot both win, and the loser writes nothing"""
        first, second = run_together([
            lambda: booking_service.book(alice.id, test_train.id, stations['NDLS'],
                                         stations['MMCT'], TRAVEL_DATE, [1, 2]),
            lambda: booking_service.book(bob.id, test_train.id, stations['NDLS'],
                                         stations['KOTA'], TRAVEL_DATE, [3, 2]),
        ])

        assert first.ok != second.ok
        loser = second if first.ok else first
        assert isinstance(loser.error, CapacityError)
        assert loser.error.taken_seats == [2]

        seats = booking_service.seat_availability(test_train.id, TRAVEL_DATE).unwrap()
        booked = [s.seat_number for s in seats if s.status.value == 'booked']
        assert booked in ([1, 2], [2, 3])

        with db_manager.get_cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS n FROM bookings")
            assert cursor.fetchone()['n'] == 1

    def test_mixed_load_keeps_ledger_consistent(self, db_manager, booking_service, test_train,
                                                stations):
        """Random counts, selections and cancellations never oversell"""
        users = create_users(db_manager, 16)
        rng = random.Random(7)
        segments = [('NDLS', 'KOTA'), ('NDLS', 'MMCT'), ('KOTA', 'MMCT')]

        def book(user, seg, seats):
            result = booking_service.book(user.id, test_train.id, stations[seg[0]],
                                          stations[seg[1]], TRAVEL_DATE, seats)
            if result.ok and rng.random() < 0.3:
                booking_service.cancel(user.id, result.value.booking_id, 1)
            return result

        tasks = []
        for user in users:
            seg = rng.choice(segments)
            if rng.random() < 0.5:
                seats = rng.randint(1, 3)
            else:
                seats = rng.sample(range(1, 6), rng.randint(1, 2))
            tasks.append(lambda user=user, seg=seg, seats=seats: book(user, seg, seats))

        run_together(tasks)
        assert_ledger_consistent(db_manager, test_train)


class TestLockScope:
    """Admissions only wait on admissions that share a capacity key"""

    def test_other_segment_does_not_wait(self, db_manager, booking_service, test_train,
                                         stations, alice, bob):
        executor = ThreadPoolExecutor(max_workers=2)
        conn = db_manager.get_connection()
        try:
            Ledger.lock(conn, [SegmentKey(test_train.id, TRAVEL_DATE,
                                          stations['NDLS'], stations['MMCT'])])

            other = executor.submit(booking_service.book, alice.id, test_train.id,
                                    stations['NDLS'], stations['KOTA'], TRAVEL_DATE, 1)
            assert other.result(timeout=RESULT_TIMEOUT).ok

            blocked = executor.submit(booking_service.book, bob.id, test_train.id,
                                      stations['NDLS'], stations['MMCT'], TRAVEL_DATE, 1)
            time.sleep(0.5)
            assert not blocked.done()

            conn.rollback()
            assert blocked.result(timeout=RESULT_TIMEOUT).ok
        finally:
            if not conn.closed:
                conn.rollback()
            db_manager.return_connection(conn)
            executor.shutdown(wait=True)

    def test_other_seat_does_not_wait(self, db_manager, booking_service, test_train,
                                      stations, alice, bob):
        executor = ThreadPoolExecutor(max_workers=2)
        conn = db_manager.get_connection()
        try:
            Ledger.lock(conn, [SeatKey(test_train.id, TRAVEL_DATE, 1)])

            free = executor.submit(booking_service.book, alice.id, test_train.id,
                                   stations['NDLS'], stations['MMCT'], TRAVEL_DATE, [2])
            assert free.result(timeout=RESULT_TIMEOUT).ok

            held = executor.submit(booking_service.book, bob.id, test_train.id,
                                   stations['NDLS'], stations['KOTA'], TRAVEL_DATE, [1])
            time.sleep(0.5)
            assert not held.done()

            conn.rollback()
            assert held.result(timeout=RESULT_TIMEOUT).value.seat_numbers == [1]
        finally:
            if not conn.closed:
                conn.rollback()
            db_manager.return_connection(conn)
            executor.shutdown(wait=True)

    def test_other_date_does_not_wait(self, db_manager, booking_service, test_train,
                                      stations, alice):
        conn = db_manager.get_connection()
        try:
            Ledger.lock(conn, [SegmentKey(test_train.id, TRAVEL_DATE,
                                          stations['NDLS'], stations['MMCT'])])
            with ThreadPoolExecutor(max_workers=1) as executor:
                future = executor.submit(booking_service.book, alice.id, test_train.id,
                                         stations['NDLS'], stations['MMCT'],
                                         TRAVEL_DATE.replace(day=16), 1)
                assert future.result(timeout=RESULT_TIMEOUT).ok
        finally:
            conn.rollback()
            db_manager.return_connection(conn)
