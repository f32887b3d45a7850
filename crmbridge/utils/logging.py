"""
Log formatting for the webhook engine.

Production writes one JSON object per line so a rule run can be followed by
correlation_id (set per HTTP request by middleware, or to the job id while the
queue processes a delivery). Development gets a readable single-line format.
Engine context travels through `extra=`: tenant, provider, CRM entity, rule,
queue job.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

SERVICE_NAME = "crmbridge"

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Record attributes copied into the output when passed via `extra=`
EXTRA_KEYS = ("tenant_id", "provider", "entity_id", "rule_id", "job_id", "error_code")

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


def _record_context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in EXTRA_KEYS
        if getattr(record, key, None) is not None
    }


class StructuredJsonFormatter(logging.Formatter):
    """
    {"timestamp": "...", "level": "INFO", "service": "crmbridge",
     "correlation_id": "...", "module": "crmbridge.services.dispatcher",
     "message": "...", "tenant_id": "...", "rule_id": 3}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        log_entry.update(_record_context(record))
        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """`12:00:01 WARNING crmbridge.services.dispatcher [cid] message tenant_id=t1`"""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.now().strftime("%H:%M:%S")
        cid = get_correlation_id()
        line = f"{stamp} {record.levelname} {record.name}"
        if cid:
            line += f" [{cid[:8]}]"
        line += f" {record.getMessage()}"
        context = _record_context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_structured_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Install a single stderr handler on the root logger. Call once at startup."""
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(stream_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
