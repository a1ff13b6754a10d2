"""
Centralized Logging Configuration

Provides standardized logging setup with JSON formatting for structured logs.
Entity identifiers passed through ``extra=`` (item_id, conversation_id,
lead_id, user_id) are carried into the JSON output.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Optional

from leadengine.core.config import get_settings

CONTEXT_FIELDS = ("user_id", "lead_id", "item_id", "conversation_id", "duration_ms")


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: Optional[str] = None,
    format_type: str = 'standard',
    log_file: Optional[str] = None,
    service_name: str = 'leadengine'
) -> logging.Logger:
    """
    Setup centralized logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'json' for structured JSON logs, 'standard' for human-readable
        log_file: Optional file path for log output
        service_name: Service name to include in logs
    """
    settings = get_settings()
    if level is None:
        level = settings.log_level.upper()

    numeric_level = getattr(logging, level, logging.INFO)

    use_json = (format_type == 'json' or
                settings.is_production or
                settings.use_json_logging)

    if use_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Noisy third-party libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('alembic').setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def setup_worker_logging() -> logging.Logger:
    """Setup logging for Celery workers."""
    return setup_logging(service_name='leadengine-worker')
