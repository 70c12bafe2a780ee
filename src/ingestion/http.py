"""
Shared HTTP GET for fetchers, mapping httpx failures onto fetch errors.
"""
import logging
from typing import Dict, Optional

import httpx

from core.errors import FetchRateLimited, FetchTimeout, FetchTransportError

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


async def http_get(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, str]] = None,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    try:
        async with httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            follow_redirects=True,
            transport=transport,
        ) as client:
            resp = await client.get(url, params=params)
    except httpx.TimeoutException as e:
        raise FetchTimeout(f"GET {url} timed out") from e
    except httpx.HTTPError as e:
        raise FetchTransportError(f"GET {url} failed: {e}") from e

    if resp.status_code == 429:
        raise FetchRateLimited(f"GET {url} returned 429", retry_after=_retry_after(resp))
    if resp.status_code == 503 and "Retry-After" in resp.headers:
        raise FetchRateLimited(f"GET {url} returned 503", retry_after=_retry_after(resp))
    if resp.status_code >= 400:
        raise FetchTransportError(f"GET {url} returned {resp.status_code}")

    return resp
