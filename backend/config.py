"""
Runtime settings read from the environment (and a local .env file)
"""
import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = 'False') -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes')


@dataclass(frozen=True)
class Settings:
    """Settings shared by the services"""
    database_url: str = 'postgresql://localhost/railway_reservation'
    pool_min: int = 2
    pool_max: int = 40
    cancellation_window_hours: int = 24
    max_seats_per_booking: int = 6
    default_fare: Decimal = Decimal('100.00')
    log_level: str = 'INFO'
    log_json: bool = False

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables, falling back to defaults"""
        return cls(
            database_url=os.getenv('DATABASE_URL', cls.database_url),
            pool_min=int(os.getenv('DB_POOL_MIN', cls.pool_min)),
            pool_max=int(os.getenv('DB_POOL_MAX', cls.pool_max)),
            cancellation_window_hours=int(
                os.getenv('CANCELLATION_WINDOW_HOURS', cls.cancellation_window_hours)
            ),
            max_seats_per_booking=int(os.getenv('MAX_SEATS_PER_BOOKING', cls.max_seats_per_booking)),
            default_fare=Decimal(os.getenv('DEFAULT_FARE', str(cls.default_fare))),
            log_level=os.getenv('LOG_LEVEL', cls.log_level).upper(),
            log_json=_env_bool('LOG_JSON'),
        )
