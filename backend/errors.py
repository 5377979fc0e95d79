"""
Error taxonomy of the booking core
"""
from typing import Iterable, Optional


class BookingError(Exception):
    """Base exception for domain rejections of a booking operation"""
    code = 'booking_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """Raised when the request itself is malformed"""
    code = 'validation_error'


class NotFoundError(BookingError):
    """Raised when a train, station, seat or booking is absent or not the caller's"""
    code = 'not_found'


class CapacityError(BookingError):
    """Raised when the requested seats cannot be admitted"""
    code = 'capacity_exceeded'

    def __init__(self, message: str, available: Optional[int] = None,
                 taken_seats: Iterable[int] = ()):
        super().__init__(message)
        self.available = available
        self.taken_seats = sorted(taken_seats)


class WindowViolationError(BookingError):
    """Raised when a cancellation comes too close to the travel date"""
    code = 'cancellation_window'

    def __init__(self, message: str, hours_remaining: float):
        super().__init__(message)
        self.hours_remaining = hours_remaining


class OverCancelError(BookingError):
    """Raised when more seats are cancelled than the booking holds"""
    code = 'over_cancel'

    def __init__(self, message: str, seats_booked: int):
        super().__init__(message)
        self.seats_booked = seats_booked


class ConflictError(BookingError):
    """Raised when a concurrent write aborted the unit of work; safe to retry"""
    code = 'conflict'


class StorageError(Exception):
    """Unexpected failure of the store, distinct from domain rejections"""
    code = 'storage_error'
