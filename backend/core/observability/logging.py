"""JSON structured logging with mandatory fields and PII redaction."""
import hashlib
import json
import logging
import re
import sys
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Iterator, Optional

from backend.core.config import settings

# Thread-local storage for context; every periodic job runs on its own thread
_context = threading.local()

_RESERVED = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')
        self.phone_pattern = re.compile(r'(\+?\d[\d \-/]{8,})')

    def _redact_pii(self, text: str) -> str:
        if not isinstance(text, str):
            return text
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)
        return text

    def _mask_email(self, match) -> str:
        """Mask email: show first char of user, keep domain."""
        email = match.group(1)
        if "@" not in email:
            return email
        user, domain = email.split("@", 1)
        masked_user = "*" if len(user) <= 1 else user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        """Mask phone: keep the last 2 digits only."""
        phone = match.group(1)
        if len(phone) <= 2:
            return "*" * len(phone)
        return "*" * (len(phone) - 2) + phone[-2:]

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        log_entry = {
            'trace_id': getattr(_context, 'trace_id', None) or 'unknown',
            'tenant_id': getattr(_context, 'tenant_id', None) or 'unknown',
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._redact_pii(record.getMessage()),
            'ts_utc': datetime.now(UTC).isoformat().replace('+00:00', 'Z'),
        }

        job = getattr(_context, 'job', None)
        if job:
            log_entry['job'] = job

        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: str) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def set_tenant_id(tenant_id: Optional[str]) -> None:
    """Set tenant (business) ID for current thread context."""
    _context.tenant_id = tenant_id


def set_job(job: Optional[str]) -> None:
    _context.job = job


@contextmanager
def log_context(*, trace_id: str | None = None, tenant_id: str | None = None, job: str | None = None) -> Iterator[None]:
    """Temporarily bind context fields for the current thread."""
    previous = (
        getattr(_context, 'trace_id', None),
        getattr(_context, 'tenant_id', None),
        getattr(_context, 'job', None),
    )
    if trace_id is not None:
        _context.trace_id = trace_id
    if tenant_id is not None:
        _context.tenant_id = tenant_id
    if job is not None:
        _context.job = job
    try:
        yield
    finally:
        _context.trace_id, _context.tenant_id, _context.job = previous


def init_logging() -> None:
    """Initialize JSON logging with mandatory fields."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger(__name__)


def hash_actor_token(token: str) -> str:
    """Return a short stable SHA-256 digest of a sensitive token.

    The raw token must never be logged; the digest identifies the actor in
    audit lines without exposing it.
    """
    return hashlib.sha256(token.encode()).hexdigest()[:16]
