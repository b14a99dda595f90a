"""
Shared httpx helper for the payment and transfer gateways.

Maps transport failures onto the gateway error family:

* 4xx -> ``GatewayRejectedError`` (never retried)
* 5xx or connection failure -> ``GatewayUnavailableError``
* read/write timeout -> ``GatewayTimeoutError`` (request may have landed)

Only requests marked ``idempotent`` are retried here (token fetches, status
queries). Money-moving POSTs are attempted once; their retry policy belongs
to the caller, which records each attempt on the entity.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from escrowbook.core.config import settings
from escrowbook.core.errors import (
    GatewayError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(
            body.get("message")
            or body.get("errorMessage")
            or body.get("ResponseDescription")
            or body
        )
    return str(body)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    gateway: str,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json_body: dict[str, Any] | None = None,
    idempotent: bool = False,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Execute a gateway HTTP request and return the parsed JSON body.

    Idempotent requests are retried on transient errors with exponential
    backoff (``settings.gateway_initial_backoff_seconds``, doubling).
    """
    max_attempts = settings.gateway_max_retries if idempotent else 1
    backoff = settings.gateway_initial_backoff_seconds
    request_timeout = timeout or settings.gateway_timeout_seconds
    last_error: GatewayError | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                timeout=request_timeout,
            )
        except httpx.ConnectError as exc:
            last_error = GatewayUnavailableError(
                f"{gateway} connection error: {exc}", raw=str(exc)
            )
        except httpx.TimeoutException as exc:
            if isinstance(exc, httpx.ConnectTimeout):
                last_error = GatewayUnavailableError(
                    f"{gateway} connect timeout: {exc}", raw=str(exc)
                )
            else:
                last_error = GatewayTimeoutError(f"{gateway} request timed out", raw=str(exc))
                if not idempotent:
                    raise last_error from exc
        else:
            if 400 <= response.status_code < 500:
                raise GatewayRejectedError(
                    f"{gateway} rejected the request: {_error_message(response)}",
                    gateway_code=str(response.status_code),
                    raw=response.text,
                )
            if response.status_code >= 500:
                last_error = GatewayUnavailableError(
                    f"{gateway} server error: HTTP {response.status_code}",
                    gateway_code=str(response.status_code),
                    raw=response.text,
                )
            else:
                return response.json()

        logger.warning(
            "%s %s %s failed on attempt %d/%d: %s",
            gateway,
            method,
            url,
            attempt,
            max_attempts,
            last_error.message,
        )
        if attempt < max_attempts:
            await asyncio.sleep(backoff)
            backoff *= 2

    assert last_error is not None
    raise last_error
