"""Database package initialization"""
from .models import (
    User, Station, RouteStop, Train, Segment, Booking,
    UserRole, BookingStatus, SeatStatus,
    row_to_user, row_to_station, row_to_train, row_to_booking
)
from .database import DatabaseManager, init_db

__all__ = [
    'User', 'Station', 'RouteStop', 'Train', 'Segment', 'Booking',
    'UserRole', 'BookingStatus', 'SeatStatus',
    'row_to_user', 'row_to_station', 'row_to_train', 'row_to_booking',
    'DatabaseManager', 'init_db'
]
