# src/services/dimp_client.py — v1
"""Client for the DIMP de-identification service (POST {url}/$de-identify)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from aether.core.errors import ClassifiedError, missing_service_url
from aether.services.http_client import request

logger = logging.getLogger(__name__)

SERVICE = "DIMP"


class DimpClient:
    """Sends one FHIR resource at a time for pseudonymization."""

    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        if not base_url:
            raise missing_service_url("dimp")
        self.endpoint = base_url.rstrip("/") + "/$de-identify"
        self.client = client

    async def pseudonymize(self, resource: dict[str, Any]) -> dict[str, Any]:
        """Return the de-identified version of ``resource``."""
        logger.debug(
            "Sending %s/%s to DIMP", resource.get("resourceType"), resource.get("id")
        )
        response = await request(
            self.client,
            "POST",
            self.endpoint,
            service=SERVICE,
            json=resource,
            headers={"Content-Type": "application/fhir+json"},
        )
        try:
            result = response.json()
        except ValueError as e:
            raise ClassifiedError(
                "service",
                "DIMP returned a response that is not JSON",
                cause=e,
                http_status=response.status_code,
                guidance=["Check the DIMP service logs", "Verify services.dimp.url"],
            ) from e
        if not isinstance(result, dict):
            raise ClassifiedError(
                "service",
                "DIMP returned a JSON value that is not a resource",
                http_status=response.status_code,
                guidance=["Check the DIMP service logs"],
            )
        if result.get("id") != resource.get("id"):
            logger.debug("Resource id pseudonymized for %s", resource.get("resourceType"))
        return result
