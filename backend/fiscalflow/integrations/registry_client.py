"""HTTP client for the company registry (BrasilAPI CNPJ lookup)."""

from __future__ import annotations

from typing import Any

import httpx

from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger
from fiscalflow.pipeline.errors import ExternalLookupError
from fiscalflow.processing.entities import normalize_cnpj

logger = get_logger(__name__)


class RegistryClient:
    """
    Looks up company profiles by CNPJ.

    One lookup per call; pacing between calls is the caller's job (the
    validation stage waits CNPJ_LOOKUP_DELAY_SECONDS between lookups).
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.BRASILAPI_BASE_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.REGISTRY_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
        )

    async def lookup_cnpj(self, cnpj: str) -> dict[str, Any]:
        """
        Fetch the registry profile of ``cnpj``.

        Raises:
            ExternalLookupError: Malformed CNPJ, non-2xx answer or transport failure.
        """
        digits = normalize_cnpj(cnpj)
        if digits is None:
            raise ExternalLookupError(f"Invalid CNPJ '{cnpj}'", identifier=cnpj)

        url = f"{self.base_url}/cnpj/v1/{digits}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise ExternalLookupError(
                f"Registry request failed: {exc}",
                identifier=digits,
            ) from exc

        if response.status_code >= 400:
            raise ExternalLookupError(
                f"Registry returned {response.status_code}",
                identifier=digits,
                status_code=response.status_code,
            )

        logger.debug("CNPJ profile fetched", cnpj=digits)
        return response.json()

    async def validate_cnpj(self, cnpj: str) -> dict[str, Any]:
        """Profile on success, ``{"error": True, "message", "cnpj"}`` otherwise."""
        try:
            return await self.lookup_cnpj(cnpj)
        except ExternalLookupError as exc:
            logger.warning("CNPJ lookup failed", cnpj=cnpj, error=str(exc), status_code=exc.status_code)
            return {"error": True, "message": str(exc), "cnpj": cnpj}

    async def aclose(self) -> None:
        await self._client.aclose()
