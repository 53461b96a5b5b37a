# src/services/http_client.py — v1
"""Shared httpx helpers: client construction, classified requests, downloads.

Transport failures become network errors, HTTP error statuses become
service errors (5xx retryable, 4xx not), so callers only ever see
ClassifiedError.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import httpx

from aether.core.errors import (
    classify,
    network_timeout,
    network_unreachable,
    service_error,
)

logger = logging.getLogger(__name__)

USER_AGENT = "aether-pipeline"
_CHUNK_SIZE = 64 * 1024


def create_http_client(
    timeout_s: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build the AsyncClient shared by every step of one orchestrator call."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_s),
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
        transport=transport,
    )


def _error_excerpt(response: httpx.Response) -> str:
    try:
        text = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""
    return text[:500]


def check_status(response: httpx.Response, service: str) -> None:
    """Raise a classified service error for 4xx/5xx responses."""
    if response.status_code >= 400:
        raise service_error(service, response.status_code, _error_excerpt(response))


async def request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    check: bool = True,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request and translate failures into ClassifiedError."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise network_timeout(url, e) from e
    except httpx.TransportError as e:
        raise network_unreachable(url, e) from e
    if check:
        check_status(response, service)
    return response


async def download_to_file(
    client: httpx.AsyncClient,
    url: str,
    dest: Path,
    *,
    service: str,
    headers: dict[str, str] | None = None,
) -> int:
    """Stream ``url`` into ``dest`` and return the number of bytes written.

    The body goes to ``dest.part`` first and is renamed on success, so an
    interrupted download never leaves a truncated file under its final name.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")
    written = 0
    try:
        async with client.stream("GET", url, headers=headers) as response:
            if response.status_code >= 400:
                await response.aread()
                check_status(response, service)
            with open(part, "wb") as fh:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    fh.write(chunk)
                    written += len(chunk)
        os.replace(part, dest)
    except httpx.TimeoutException as e:
        part.unlink(missing_ok=True)
        raise network_timeout(url, e) from e
    except httpx.TransportError as e:
        part.unlink(missing_ok=True)
        raise network_unreachable(url, e) from e
    except OSError as e:
        part.unlink(missing_ok=True)
        raise classify(e) from e
    except BaseException:
        part.unlink(missing_ok=True)
        raise
    logger.debug("Downloaded %s (%d bytes) to %s", url, written, dest)
    return written
