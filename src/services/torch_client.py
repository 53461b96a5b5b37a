# src/services/torch_client.py — v1
"""TORCH client: CRTDL submission, status polling and result download.

Protocol:
  POST {base_url}/fhir/$extract-data with a FHIR Parameters body carrying
  the base64 CRTDL; the Content-Location header is the status URL.
  GET status URL: 202 = still running, 200 = done with a Parameters body
  whose ``output`` parameters hold ``url`` parts, anything else = error.

Only individual poll and download requests are retried; a submission is
never repeated by this client.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

import httpx

from aether.config.models import TorchConfig
from aether.core.errors import ClassifiedError, missing_service_url, service_error
from aether.core.retry import RetryPolicy, with_retry
from aether.services.http_client import download_to_file, request
from aether.services.importer import filename_from_url

logger = logging.getLogger(__name__)

SERVICE = "TORCH"
EXTRACT_PATH = "/fhir/$extract-data"


def build_extraction_request(crtdl_bytes: bytes) -> dict[str, Any]:
    """FHIR Parameters resource wrapping a CRTDL document."""
    return {
        "resourceType": "Parameters",
        "parameter": [
            {
                "name": "crtdl",
                "valueBase64Binary": base64.b64encode(crtdl_bytes).decode("ascii"),
            }
        ],
    }


def parse_extraction_result(body: Any) -> list[str]:
    """Collect the ``output.url`` values of a completed extraction."""
    if not isinstance(body, dict) or body.get("resourceType") != "Parameters":
        found = body.get("resourceType") if isinstance(body, dict) else type(body).__name__
        raise ClassifiedError(
            "service",
            f"Unexpected TORCH response type: {found} (expected Parameters)",
            guidance=["Check that the status URL points at a TORCH server"],
        )
    urls: list[str] = []
    for param in body.get("parameter") or []:
        if param.get("name") != "output":
            continue
        for part in param.get("part") or []:
            if part.get("name") == "url" and part.get("valueUrl"):
                urls.append(part["valueUrl"])
    return urls


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


class TorchClient:
    """Talks to one TORCH server."""

    def __init__(
        self,
        config: TorchConfig,
        client: httpx.AsyncClient,
        retry_policy: RetryPolicy,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.client = client
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._clock = clock

    @property
    def auth(self) -> httpx.BasicAuth | None:
        if not self.config.username:
            return None
        return httpx.BasicAuth(self.config.username, self.config.password)

    def normalize_url(self, raw_url: str, *, download: bool = False) -> str:
        """Rebase ``raw_url`` onto the configured server address.

        TORCH reports URLs with its internal host name; downloads go to
        file_server_url when one is configured.
        """
        base = self.config.base_url
        if download and self.config.file_server_url:
            base = self.config.file_server_url
        base = base.rstrip("/")
        if not base:
            return raw_url
        if raw_url.startswith(("http://", "https://")):
            parts = urlsplit(raw_url)
            return base + parts.path + (f"?{parts.query}" if parts.query else "")
        return base + (raw_url if raw_url.startswith("/") else "/" + raw_url)

    async def submit_extraction(self, crtdl_path: str | Path) -> str:
        """Submit a CRTDL and return the status URL to poll."""
        if not self.config.base_url:
            raise missing_service_url("torch")
        payload = build_extraction_request(Path(crtdl_path).read_bytes())
        url = self.config.base_url.rstrip("/") + EXTRACT_PATH
        logger.info("Submitting CRTDL %s to %s", crtdl_path, url)

        response = await request(
            self.client,
            "POST",
            url,
            service=SERVICE,
            json=payload,
            headers={"Content-Type": "application/fhir+json"},
            auth=self.auth,
        )
        location = response.headers.get("Content-Location")
        if not location:
            raise ClassifiedError(
                "service",
                "TORCH accepted the extraction but returned no Content-Location header",
                http_status=response.status_code,
                guidance=["Check the TORCH server version and logs"],
            )
        status_url = self.normalize_url(location)
        logger.info("TORCH extraction submitted: %s", status_url)
        return status_url

    async def _poll_once(self, status_url: str) -> tuple[int, Any]:
        response = await request(
            self.client,
            "GET",
            status_url,
            service=SERVICE,
            headers={"Accept": "application/json"},
            auth=self.auth,
        )
        if response.status_code == 200:
            return 200, response.json()
        return response.status_code, None

    async def poll_extraction(self, status_url: str) -> list[str]:
        """Poll until the extraction completes and return the file URLs.

        The interval doubles from polling_interval_seconds up to
        max_polling_interval_seconds. Gives up after
        extraction_timeout_minutes.
        """
        interval = self.config.polling_interval_seconds
        deadline = self._clock() + self.config.extraction_timeout_minutes * 60
        polls = 0
        while True:
            polls += 1
            status, body = await with_retry(
                lambda: self._poll_once(status_url), self.retry_policy, sleep=self._sleep
            )
            if status == 200:
                urls = [self.normalize_url(u, download=True) for u in parse_extraction_result(body)]
                logger.info("TORCH extraction finished after %d polls: %d files", polls, len(urls))
                return urls
            if status != 202:
                raise service_error(SERVICE, status, "unexpected status while polling extraction")

            if self._clock() + interval > deadline:
                raise ClassifiedError(
                    "service",
                    f"TORCH extraction did not finish within "
                    f"{self.config.extraction_timeout_minutes} minutes",
                    guidance=[
                        "Increase services.torch.extraction_timeout_minutes",
                        "Resume the job later; polling continues from the recorded extraction URL",
                    ],
                )
            logger.debug("Extraction in progress (poll %d), next poll in %.1fs", polls, interval)
            await self._sleep(interval)
            interval = min(interval * 2, self.config.max_polling_interval_seconds)

    async def download_files(self, urls: list[str], dest_dir: Path) -> list[tuple[Path, int]]:
        """Download every result file; returns (path, bytes) pairs."""
        results: list[tuple[Path, int]] = []
        headers = {"Accept": "application/fhir+ndjson"}
        if self.auth is not None:
            headers["Authorization"] = basic_auth_header(self.config.username, self.config.password)
        for url in urls:
            dest = dest_dir / filename_from_url(url)
            size = await with_retry(
                lambda url=url, dest=dest: download_to_file(
                    self.client, url, dest, service=SERVICE, headers=headers
                ),
                self.retry_policy,
                sleep=self._sleep,
            )
            results.append((dest, size))
        return results
