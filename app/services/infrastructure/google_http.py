"""
Shared HTTP plumbing for Google APIs: retry with backoff, and classification
of failed responses into an ErrorKind at the point they are first parsed.
"""

import asyncio

import httpx

from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import ErrorKind, ProviderError

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Google reports quota exhaustion as 403 with one of these reasons
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def create_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(REQUEST_TIMEOUT)
    limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
    return httpx.AsyncClient(timeout=timeout, limits=limits)


async def request_with_retry(
    client: httpx.AsyncClient, method: str, url: str, service: str, **kwargs
) -> httpx.Response:
    """
    Execute an HTTP request, retrying transient statuses and network errors.

    Raises:
        ProviderError: provider_unavailable once network retries are exhausted
    """
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            if attempt >= MAX_RETRIES:
                logger.warning(
                    "Google API unreachable", service=service, error=str(e), attempts=attempt
                )
                raise ProviderError(
                    f"{service} unreachable: {e}",
                    kind=ErrorKind.PROVIDER_UNAVAILABLE,
                    provider="google",
                ) from e
            backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
            logger.debug(
                "Google API request error, retrying",
                service=service,
                attempt=attempt,
                error=str(e),
                backoff_seconds=backoff,
            )
            await asyncio.sleep(backoff)
            continue

        if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
            backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
            logger.debug(
                "Google API transient status, retrying",
                service=service,
                attempt=attempt,
                status_code=response.status_code,
                backoff_seconds=backoff,
            )
            await asyncio.sleep(backoff)
            continue
        return response

    raise RuntimeError("Google API retry loop exhausted")


def _error_reason(payload: dict) -> str | None:
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    details = error.get("errors") or []
    if details and isinstance(details[0], dict):
        return details[0].get("reason")
    return error.get("status")


def classify_error(
    response: httpx.Response, service: str, cursor_invalid_statuses: frozenset[int] = frozenset()
) -> ProviderError:
    """Map a failed Google API response to a typed ProviderError."""
    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {}
    payload = payload if isinstance(payload, dict) else {}

    status = response.status_code
    reason = _error_reason(payload)

    if status in cursor_invalid_statuses:
        kind = ErrorKind.CURSOR_INVALID
    elif status == 401:
        kind = ErrorKind.AUTH_EXPIRED
    elif status == 403 and reason not in RATE_LIMIT_REASONS:
        kind = ErrorKind.AUTH_EXPIRED
    else:
        kind = ErrorKind.PROVIDER_UNAVAILABLE

    logger.warning(
        "Google API request failed",
        service=service,
        status_code=status,
        reason=reason,
        error_kind=kind.value,
    )
    return ProviderError(
        f"{service} request failed (HTTP {status})",
        kind=kind,
        status_code=status,
        provider="google",
    )


def parse_json(response: httpx.Response, service: str) -> dict:
    try:
        data = response.json() if response.content else {}
    except ValueError as e:
        raise ProviderError(
            f"{service} returned an unparseable body",
            kind=ErrorKind.PROVIDER_UNAVAILABLE,
            status_code=response.status_code,
            provider="google",
        ) from e
    return data if isinstance(data, dict) else {}
