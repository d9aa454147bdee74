"""JSON and human-readable log formatters for lookup-table generation runs."""

import json
import logging
from datetime import datetime, timezone

# Extra fields the generators attach via ``logger.x(..., extra={...})``
TRACE_FIELDS = (
    "profile",
    "value_set",
    "cache_key",
    "refset",
    "page",
    "total",
    "status_code",
    "attempt",
)


class JSONLogFormatter(logging.Formatter):
    """Formatter that outputs structured JSON log lines (JSONL format).

    Each log record is formatted as a single JSON object on one line,
    suitable for grepping a run afterwards.
    """

    def __init__(self, include_extra: bool = True):
        """Initialize the JSON formatter.

        Args:
            include_extra: Whether to include extra fields from log records
        """
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            for field in TRACE_FIELDS:
                value = getattr(record, field, None)
                if value is not None:
                    log_data[field] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


class HumanReadableFormatter(logging.Formatter):
    """Condensed console format: time, level, message and key details."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        prefix = f"[{timestamp}] {record.levelname:<7}"

        profile = getattr(record, "profile", None)
        if profile:
            prefix += f" [{profile}]"

        details = []
        if hasattr(record, "attempt"):
            details.append(f"attempt={record.attempt}")
        if hasattr(record, "page"):
            details.append(f"page={record.page}")
        if hasattr(record, "status_code"):
            details.append(f"status={record.status_code}")

        message = record.getMessage()
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        if details:
            return f"{prefix}: {message} ({', '.join(details)})"
        return f"{prefix}: {message}"
