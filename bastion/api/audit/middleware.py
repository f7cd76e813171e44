"""
Request Context Middleware

Builds the RequestContext for every HTTP request, makes it current for
the request's task, echoes the correlation id on the response and feeds
the request metrics.
"""

import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import HTTPConnection, Request
from starlette.responses import Response

from bastion.api.audit.context import (
    CORRELATION_ID_HEADER,
    REQUEST_ID_HEADER,
    RequestContext,
    bind_context,
    correlation_id_from_headers,
    reset_context,
)
from bastion.api.config import settings

logger = logging.getLogger(__name__)


def client_ip(connection: HTTPConnection, trust_proxy: Optional[bool] = None) -> Optional[str]:
    """Caller address, honouring X-Forwarded-For / X-Real-IP behind a proxy."""
    if trust_proxy is None:
        trust_proxy = settings.TRUST_PROXY_HEADERS

    if trust_proxy:
        forwarded = connection.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = connection.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return connection.client.host if connection.client else None


def build_context(connection: HTTPConnection, method: Optional[str] = None) -> RequestContext:
    return RequestContext(
        correlation_id=correlation_id_from_headers(connection.headers),
        ip_address=client_ip(connection),
        user_agent=connection.headers.get("user-agent"),
        http_method=method,
        http_path=connection.url.path,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = build_context(request, request.method)
        request.state.context = context
        token = bind_context(context)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            self._record(request, context, 500)
            raise
        finally:
            reset_context(token)

        response.headers[CORRELATION_ID_HEADER] = context.correlation_id
        response.headers[REQUEST_ID_HEADER] = context.correlation_id
        self._record(request, context, response.status_code)
        return response

    @staticmethod
    def _record(request: Request, context: RequestContext, status_code: int) -> None:
        metrics = getattr(request.app.state, "metrics", None)
        if metrics is not None:
            metrics.record_request(request.method, status_code, context.elapsed_ms())
