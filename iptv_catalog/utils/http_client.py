"""
HTTP fetch utilities

This module handles feed downloads with retry logic.
"""
import asyncio
import json
import logging
from typing import Any

import httpx

from iptv_catalog.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


def create_http_client(user_agent: str) -> httpx.AsyncClient:
    """Create the HTTP client shared by all feed requests of one ingestion run."""
    return httpx.AsyncClient(
        headers={"User-Agent": user_agent},
        follow_redirects=True,
    )


async def fetch_bytes(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, str] | None = None,
    timeout: float = 30.0,
    max_retries: int = 3,
    backoff_factor: float = 2.0
) -> bytes:
    """
    Download a URL with exponential backoff retry logic

    Retries on transient network errors (timeouts, connection errors) and 5xx.
    Does NOT retry on 4xx HTTP errors (client errors).

    Args:
        client: Shared HTTP client
        url: URL to download from
        params: Optional query parameters
        timeout: HTTP timeout in seconds
        max_retries: Maximum number of attempts
        backoff_factor: Exponential backoff multiplier (wait = backoff_factor ^ attempt)

    Returns:
        Response body

    Raises:
        httpx.HTTPError: If download fails after all retries
    """
    display_url = sanitize_url(str(httpx.URL(url, params=params)))
    logger.debug("Fetching %s", display_url)

    last_error: Exception | None = None

    for attempt in range(max_retries):
        try:
            response = await client.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            logger.debug("Fetched %.2f KB from %s", len(response.content) / 1024, display_url)
            return response.content

        except (httpx.TimeoutException, httpx.TransportError) as e:
            # Transient network errors - retry
            last_error = e
            if attempt < max_retries - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    "Fetch attempt %s/%s for %s failed (transient error): %s. Retrying in %.1fs...",
                    attempt + 1,
                    max_retries,
                    display_url,
                    type(e).__name__,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error("Fetch of %s failed after %s attempts (transient error)", display_url, max_retries)

        except httpx.HTTPStatusError as e:
            # HTTP errors - don't retry on 4xx (client error), retry on 5xx (server error)
            if 400 <= e.response.status_code < 500:
                logger.error("HTTP %s (client error) for %s", e.response.status_code, display_url)
                raise

            last_error = e
            if attempt < max_retries - 1:
                wait_time = backoff_factor ** attempt
                logger.warning(
                    "Fetch attempt %s/%s for %s failed (HTTP %s server error). Retrying in %.1fs...",
                    attempt + 1,
                    max_retries,
                    display_url,
                    e.response.status_code,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(
                    "Fetch of %s failed after %s attempts (HTTP %s)",
                    display_url,
                    max_retries,
                    e.response.status_code,
                )

    # If we exhausted all retries, raise the last error
    if last_error:
        raise last_error

    raise RuntimeError(f"Failed to fetch {display_url} after {max_retries} attempts")


async def fetch_text(client: httpx.AsyncClient, url: str, **kwargs) -> str:
    """Download a URL and decode it as UTF-8, replacing undecodable bytes."""
    content = await fetch_bytes(client, url, **kwargs)
    return content.decode("utf-8", errors="replace")


async def fetch_json(client: httpx.AsyncClient, url: str, **kwargs) -> Any:
    """
    Download a URL and decode its JSON body.

    Raises:
        ValueError: If the body is not valid JSON
    """
    content = await fetch_bytes(client, url, **kwargs)
    return json.loads(content)
