import json
import logging
from datetime import datetime

from freight_market.utils.trace_id import trace_id_var


class JSONFormatter(logging.Formatter):
    """
    Custom formatter to output log records as a JSON string.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_object = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "trace_id": getattr(record, 'trace_id', None),
            "channel": getattr(record, 'channel', None),
        }
        # Add exception info if it exists
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_object, ensure_ascii=False)


class TraceIdFilter(logging.Filter):
    """Attach the current session trace id to every record."""

    def filter(self, record):
        record.trace_id = trace_id_var.get()
        return True


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "trace_id": {
            "()": "freight_market.utils.logging_config.TraceIdFilter",
        },
    },
    "formatters": {
        "json": {
            "()": "freight_market.utils.logging_config.JSONFormatter",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["trace_id"],
            "stream": "ext://sys.stdout",
        },
    },
    "root": {
        "level": "INFO",
        "handlers": ["console"],
    },
}
