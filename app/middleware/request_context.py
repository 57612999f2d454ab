"""
RequestContext Middleware - tags every request with a request id.

The id is bound into structlog's context variables for the duration of the
request, so every log line a route, engine or repository emits while
serving it carries `request_id`. Clients get it back as `X-Request-ID`;
an inbound `X-Request-ID` (e.g. from Stripe or a load balancer) is reused.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            logger.debug("Request started", method=request.method, path=request.url.path)
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
