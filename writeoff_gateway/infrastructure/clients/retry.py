"""HTTP send with bounded exponential backoff for idempotent external calls"""

import asyncio
import logging
from typing import Any

import httpx
from prometheus_client import Histogram

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_retryable(error: Exception) -> bool:
    """Timeouts, network failures, throttling and server errors are worth another attempt"""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, httpx.RequestError)


async def post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    payload: Any,
    *,
    max_retries: int,
    backoff_base: float,
    latency: Histogram,
    **kwargs: Any,
) -> httpx.Response:
    """
    POST with retry on transient failures.

    Retry strategy:
    - Exponential backoff: base, 2*base, 4*base, ... (base * 2^(attempt-1))
    - Retries on timeouts, network errors, 408/425/429 and 5xx
    - Other 4xx responses (bad credentials, bad request) raise immediately
    - Every attempt is observed in the latency histogram

    Only use for requests that are safe to repeat.

    Raises:
        httpx.HTTPStatusError / httpx.RequestError: Last error once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            with latency.time():
                response = await client.post(url, json=payload, **kwargs)
                response.raise_for_status()
                return response

        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            attempt += 1
            if not is_retryable(e) or attempt >= max_retries:
                raise

            backoff = backoff_base * (2 ** (attempt - 1))
            logging.warning(
                f"Retrying {url} after {type(e).__name__}",
                extra={"attempt": attempt, "backoff_seconds": backoff},
            )
            await asyncio.sleep(backoff)
