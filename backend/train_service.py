"""
Train management service
Creates trains with their route and seats, and resolves route segments
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from psycopg2 import errors as pg_errors
from psycopg2.extras import RealDictCursor, execute_values

from backend.config import Settings
from backend.errors import NotFoundError, ValidationError
from backend.fare import to_money
from backend.results import SegmentAvailability, TrainSearchResult
from database import (
    DatabaseManager, RouteStop, Segment, Train,
    row_to_station, row_to_train
)

logger = logging.getLogger(__name__)

SEAT_TYPES = ('window', 'aisle')

_TRAIN_COLS = "t.id, t.train_number, t.train_name, t.total_seats, t.fare, t.created_at"


def fetch_train(conn, train_id: int, lock: bool = False) -> Train:
    """
    Load a train on the caller's connection

    With ``lock`` the row is held FOR SHARE until the transaction ends, so
    capacity and fare cannot change under a running admission.

    Raises:
        NotFoundError: If the train does not exist
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute(f"""
            SELECT {_TRAIN_COLS}
            FROM trains t
            WHERE t.id = %s
            {'FOR SHARE' if lock else ''}
        """, (train_id,))
        train = row_to_train(cursor.fetchone())

    if train is None:
        raise NotFoundError(f"Train with ID {train_id} not found")
    return train


def resolve_segment(conn, train_id: int, from_station_id: int, to_station_id: int) -> Segment:
    """
    Validate an origin/destination pair against the train's route

    Raises:
        NotFoundError: If either station is not on the train's route
        ValidationError: If the origin does not come before the destination
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute("""
            SELECT station_id, sequence_number
            FROM train_routes
            WHERE train_id = %s AND station_id IN (%s, %s)
        """, (train_id, from_station_id, to_station_id))
        sequences = {row['station_id']: row['sequence_number'] for row in cursor.fetchall()}

    missing = [s for s in (from_station_id, to_station_id) if s not in sequences]
    if missing:
        raise NotFoundError(
            f"Station(s) {', '.join(map(str, missing))} not on the route of train {train_id}"
        )

    if sequences[from_station_id] >= sequences[to_station_id]:
        raise ValidationError(
            f"Station {from_station_id} does not come before station {to_station_id} on train {train_id}"
        )

    return Segment(
        train_id=train_id,
        from_station_id=from_station_id,
        to_station_id=to_station_id,
        from_sequence=sequences[from_station_id],
        to_sequence=sequences[to_station_id],
    )


def _load_routes(conn, train_ids: Sequence[int]) -> Dict[int, List[RouteStop]]:
    """Ordered route stops of each train, keyed by train id"""
    routes: Dict[int, List[RouteStop]] = {}
    if not train_ids:
        return routes

    with conn.cursor(cursor_factory=RealDictCursor) as cursor:
        cursor.execute("""
            SELECT tr.train_id, s.id, s.station_name, s.station_code,
                   tr.sequence_number, tr.arrival_time, tr.departure_time
            FROM train_routes tr
            JOIN stations s ON s.id = tr.station_id
            WHERE tr.train_id = ANY(%s)
            ORDER BY tr.train_id, tr.sequence_number
        """, (list(train_ids),))
        for row in cursor.fetchall():
            routes.setdefault(row['train_id'], []).append(RouteStop(
                station=row_to_station(row),
                sequence_number=row['sequence_number'],
                arrival_time=row['arrival_time'],
                departure_time=row['departure_time'],
            ))
    return routes


class TrainService:
    """Service for train, route and station operations"""

    def __init__(self, db_manager: DatabaseManager, settings: Optional[Settings] = None):
        self.db = db_manager
        self.settings = settings or Settings.from_env()

    def create_train(self, train_number: str, train_name: str, total_seats: int,
                     stations: Sequence[dict], fare: Optional[Decimal] = None) -> Train:
        """
        Create a train together with its route and numbered seats

        Args:
            train_number: Unique train number
            train_name: Display name
            total_seats: Seat capacity; seats 1..total_seats are generated
            stations: Ordered stops, each a dict with ``name``, ``code`` and
                optional ``arrival_time`` / ``departure_time``
            fare: Fare per seat (defaults to the configured default fare)

        Returns:
            Created train with its route loaded

        Raises:
            ValidationError: On bad capacity, fewer than two stops, a repeated
                station or a duplicate train number
        """
        if total_seats is None or total_seats < 1:
            raise ValidationError("A train needs at least one seat")
        if len(stations) < 2:
            raise ValidationError("A route needs at least two stations")
        codes = [stop['code'] for stop in stations]
        if len(set(codes)) != len(codes):
            raise ValidationError("A station can appear only once on a route")

        fare = to_money(self.settings.default_fare if fare is None else fare)
        if fare < 0:
            raise ValidationError("Fare cannot be negative")

        try:
            with self.db.transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute("""
                        INSERT INTO trains (train_number, train_name, total_seats, fare)
                        VALUES (%s, %s, %s, %s)
                        RETURNING id, train_number, train_name, total_seats, fare, created_at
                    """, (train_number, train_name, total_seats, fare))
                    train = row_to_train(cursor.fetchone())

                    for sequence, stop in enumerate(stations, start=1):
                        cursor.execute("""
                            INSERT INTO stations (station_name, station_code)
                            VALUES (%s, %s)
                            ON CONFLICT (station_code)
                                DO UPDATE SET station_code = EXCLUDED.station_code
                            RETURNING id, station_name, station_code
                        """, (stop['name'], stop['code']))
                        station = row_to_station(cursor.fetchone())

                        cursor.execute("""
                            INSERT INTO train_routes
                            (train_id, station_id, sequence_number, arrival_time, departure_time)
                            VALUES (%s, %s, %s, %s, %s)
                        """, (train.id, station.id, sequence,
                              stop.get('arrival_time'), stop.get('departure_time')))

                        train.route.append(RouteStop(
                            station=station,
                            sequence_number=sequence,
                            arrival_time=stop.get('arrival_time'),
                            departure_time=stop.get('departure_time'),
                        ))

                    execute_values(
                        cursor,
                        "INSERT INTO seats (train_id, seat_number, seat_type) VALUES %s",
                        [(train.id, n, SEAT_TYPES[(n + 1) % 2]) for n in range(1, total_seats + 1)]
                    )
        except pg_errors.UniqueViolation as e:
            raise ValidationError(f"Train number {train_number} already exists") from e

        logger.info("Created train %s with %d seats and %d stops",
                    train.train_number, train.total_seats, len(train.route),
                    extra={'train_id': train.id})
        return train

    def get_train(self, train_id: int) -> Optional[Train]:
        """Get a train with its ordered route, or None"""
        with self.db.transaction() as conn:
            try:
                train = fetch_train(conn, train_id)
            except NotFoundError:
                return None

            train.route = _load_routes(conn, [train.id]).get(train.id, [])
            return train

    def list_trains(self) -> List[Train]:
        """List every train with its ordered route, by train number"""
        with self.db.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(f"SELECT {_TRAIN_COLS} FROM trains t ORDER BY t.train_number")
                trains = [row_to_train(row) for row in cursor.fetchall()]

            routes = _load_routes(conn, [train.id for train in trains])
        for train in trains:
            train.route = routes.get(train.id, [])
        return trains

    def get_train_by_number(self, train_number: str) -> Optional[Train]:
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT id FROM trains WHERE train_number = %s", (train_number,))
            row = cursor.fetchone()
        return self.get_train(row['id']) if row else None

    def list_stations(self):
        """List all stations ordered by code"""
        with self.db.get_cursor() as cursor:
            cursor.execute("""
                SELECT id, station_name, station_code
                FROM stations
                ORDER BY station_code
            """)
            return [row_to_station(row) for row in cursor.fetchall()]

    def search_trains(self, from_station_id: int, to_station_id: int,
                      travel_date: date) -> List[TrainSearchResult]:
        """
        Find trains running from one station to a later one that still have
        seats on that segment for the date
        """
        with self.db.get_cursor() as cursor:
            cursor.execute(f"""
                SELECT {_TRAIN_COLS},
                       tr1.departure_time,
                       tr2.arrival_time,
                       (
                           SELECT COALESCE(SUM(COALESCE(NULLIF(b.seats_booked, 0), 1)), 0)
                           FROM bookings b
                           WHERE b.train_id = t.id
                             AND b.travel_date = %s
                             AND b.from_station_id = tr1.station_id
                             AND b.to_station_id = tr2.station_id
                             AND b.status = 'confirmed'
                       ) AS committed_seats
                FROM trains t
                JOIN train_routes tr1 ON tr1.train_id = t.id AND tr1.station_id = %s
                JOIN train_routes tr2 ON tr2.train_id = t.id AND tr2.station_id = %s
                WHERE tr1.sequence_number < tr2.sequence_number
                ORDER BY tr1.departure_time NULLS LAST, t.train_number
            """, (travel_date, from_station_id, to_station_id))
            rows = cursor.fetchall()

        results = []
        for row in rows:
            availability = SegmentAvailability(
                train_id=row['id'],
                travel_date=travel_date,
                from_station_id=from_station_id,
                to_station_id=to_station_id,
                total_seats=row['total_seats'],
                committed_seats=int(row['committed_seats']),
            )
            if availability.available_seats > 0:
                results.append(TrainSearchResult(
                    train=row_to_train(row),
                    departure_time=row['departure_time'],
                    arrival_time=row['arrival_time'],
                    availability=availability,
                ))
        return results
