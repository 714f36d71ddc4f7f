import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from datetime import datetime, timezone

# Copy operation the current task is working on; stamped on every record.
_operation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "vm_copy_operation_id", default=None
)


class StructuredLogger:
    """
    A logger that writes one JSON object per record to stderr.

    Records carry ``operation_id``, ``stage`` and ``disk`` as top-level
    fields ahead of any other extras, so the lines of one copy can be
    filtered per run, per stage and per disk.
    """

    def __init__(self, name: str, level: int = logging.INFO):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False

        if self.logger.handlers:
            self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(self.JsonFormatter())
        self.logger.addHandler(handler)

    class JsonFormatter(logging.Formatter):
        CONTEXT_FIELDS = ("operation_id", "stage", "disk")

        # LogRecord attributes that are not caller-supplied extras
        STANDARD_ATTRS = {
            "name", "msg", "args", "created", "filename", "funcName",
            "levelname", "levelno", "lineno", "module", "msecs", "message",
            "pathname", "process", "processName", "relativeCreated",
            "thread", "threadName", "exc_info", "exc_text", "stack_info",
            "taskName",
        }

        def format(self, record: logging.LogRecord) -> str:
            log_entry: Dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }

            extras = {
                key: value
                for key, value in record.__dict__.items()
                if key not in self.STANDARD_ATTRS
            }
            if "operation_id" not in extras:
                # transaction records name the same id transaction_id
                bound = extras.get("transaction_id") or _operation_id.get()
                if bound:
                    extras["operation_id"] = bound

            for key in self.CONTEXT_FIELDS:
                if extras.get(key) is not None:
                    log_entry[key] = extras.pop(key)
            log_entry.update(extras)

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_entry, default=str)

    @contextmanager
    def operation(self, operation_id: str) -> Iterator[None]:
        """Stamp ``operation_id`` on every record logged inside the block."""
        token = _operation_id.set(operation_id)
        try:
            yield
        finally:
            _operation_id.reset(token)

    def set_level(self, level: str) -> None:
        """Set the level from a name such as ``DEBUG``."""
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs)

    def critical(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        self.logger.critical(message, exc_info=exc_info, extra=kwargs)


logger = StructuredLogger("vm_copy")
