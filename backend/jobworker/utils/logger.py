"""Process-wide logging for the API server and the worker.

Records are tagged with the worker, queue and job they were emitted for.
``Worker.start`` binds ``ctx_worker_id`` / ``ctx_queue`` and each job run
binds ``ctx_job_id``; ``JobContextFilter`` copies them onto the record so
both the text and the JSON format can show them.
"""

import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

ctx_job_id = contextvars.ContextVar("job_id", default=None)
ctx_queue = contextvars.ContextVar("queue", default=None)
ctx_worker_id = contextvars.ContextVar("worker_id", default=None)

_CONTEXT_VARS = (
    ("worker_id", ctx_worker_id),
    ("queue", ctx_queue),
    ("job_id", ctx_job_id),
)

# Name of the handler setup_logger owns; re-running setup replaces only it.
HANDLER_NAME = "jobworker"

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(job_context)s%(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class JobContextFilter(logging.Filter):
    """Copy the bound worker / queue / job ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = []
        for name, var in _CONTEXT_VARS:
            value = getattr(record, name, None) or var.get()
            setattr(record, name, value)
            if value:
                parts.append(f"{name}={value}")
        record.job_context = f"[{' '.join(parts)}] " if parts else ""
        return True


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.pop("job_context", None)
        for name, _ in _CONTEXT_VARS:
            if not log_record.get(name):
                log_record.pop(name, None)


def setup_logger(log_format: str = "text", log_level: str = "INFO") -> logging.Logger:
    """Install the jobworker handler on the root logger and return the root logger.

    Safe to call more than once: the API module and the worker entrypoint
    both call it. Handlers installed by anyone else are left in place.
    """
    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if h.get_name() == HANDLER_NAME]:
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.addFilter(JobContextFilter())
    if log_format.lower() == "json":
        handler.setFormatter(
            CorrelationJsonFormatter(JSON_FORMAT, rename_fields={"levelname": "level", "asctime": "timestamp"})
        )
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Driver and migration chatter drowns out job logs at INFO.
    for noisy in ("asyncpg", "aiosqlite", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger
