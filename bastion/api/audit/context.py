"""
Request Context

Per-request state shared by the access gate and the audit recorder:
correlation id, network metadata, timing, and the authenticated
principal once the gate has resolved it.

The active context lives in a ContextVar, so each request (and every
task spawned from it) sees its own object and concurrent requests never
share a correlation id.
"""

import logging
import re
import time
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, Optional

if TYPE_CHECKING:
    from bastion.api.auth.principal import Principal


CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"

_SAFE_ID = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")

_current_context: ContextVar[Optional["RequestContext"]] = ContextVar(
    "bastion_request_context", default=None
)


@dataclass
class RequestContext:
    """Everything an audit entry needs to know about the originating request."""

    correlation_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    http_method: Optional[str] = None
    http_path: Optional[str] = None
    started_at: float = field(default_factory=time.perf_counter)
    principal: Optional["Principal"] = None

    @classmethod
    def background(cls, correlation_id: Optional[str] = None) -> "RequestContext":
        """Context for work that does not originate from an HTTP request."""
        return cls(correlation_id=correlation_id or new_correlation_id())

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def correlation_id_from_headers(headers: Mapping[str, str]) -> str:
    """
    Pick the inbound correlation id or generate one.

    X-Correlation-ID wins over X-Request-ID. Values that are empty, too
    long, or contain unexpected characters are replaced with a fresh id.
    """
    for header in (CORRELATION_ID_HEADER, REQUEST_ID_HEADER):
        value = headers.get(header)
        if value and _SAFE_ID.match(value.strip()):
            return value.strip()
    return new_correlation_id()


def bind_context(context: RequestContext) -> Token:
    """Make a context current for the running task."""
    return _current_context.set(context)


def reset_context(token: Token) -> None:
    _current_context.reset(token)


def current_context() -> Optional[RequestContext]:
    return _current_context.get()


def get_correlation_id() -> Optional[str]:
    context = _current_context.get()
    return context.correlation_id if context else None


class CorrelationIdFilter(logging.Filter):
    """Stamp log records with the active correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """Install the default log format with correlation ids."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
        )
    )

    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        if any(isinstance(f, CorrelationIdFilter) for f in existing.filters):
            root.removeHandler(existing)
    root.addHandler(handler)
