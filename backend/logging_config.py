"""
Logging setup: plain text for development, JSON lines when LOG_JSON is set
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from backend.config import Settings

# Extras passed through ``logger.info(..., extra={...})`` that become JSON fields
CONTEXT_FIELDS = ('user_id', 'train_id', 'booking_id')

TEXT_FORMAT = '%(asctime)s %(levelname)s %(name)s %(message)s'


class ReservationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a UTC timestamp, the level and booking context"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord,
                   message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['service'] = 'railway-reservation'
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_record[name] = getattr(record, name)


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Configure the root logger once; repeated calls replace the handler"""
    settings = settings or Settings.from_env()

    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(ReservationJsonFormatter('%(name)s %(message)s'))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if getattr(existing, '_reservation_handler', False):
            root_logger.removeHandler(existing)
    handler._reservation_handler = True
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    return root_logger
