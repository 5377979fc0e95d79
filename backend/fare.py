"""
Fare model
"""
from decimal import Decimal, ROUND_HALF_UP

from backend.errors import ValidationError
from database import Train

CENTS = Decimal('0.01')


def to_money(amount) -> Decimal:
    """Normalize an amount to a two-decimal Decimal"""
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def fare_per_seat(train: Train) -> Decimal:
    return to_money(train.fare)


def calculate_fare(train: Train, seat_count: int) -> Decimal:
    """
    Total fare for a number of seats on a train

    Args:
        train: Train carrying the per-seat fare
        seat_count: Number of seats, at least one

    Returns:
        fare per seat times seat count, in cents precision

    Raises:
        ValidationError: If seat_count is not a positive integer
    """
    if isinstance(seat_count, bool) or not isinstance(seat_count, int) or seat_count <= 0:
        raise ValidationError(f"Seat count must be a positive integer, got {seat_count!r}")
    return to_money(fare_per_seat(train) * seat_count)
