"""Pulse — Analytics Fetch Provider.

The engine never talks to analytics APIs itself. It asks a provider to fetch
one period for a client and store the rows; the provider only reports
success or failure and owns its own retry policy.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from pulse.config import settings
from pulse.core.errors import FetchProviderError
from pulse.models.metric_models import Granularity
from pulse.core.logging import get_logger

logger = get_logger("connectors.fetch")


class FetchProvider(ABC):
    """Abstract base for the external fetch-and-store collaborator."""

    @abstractmethod
    async def fetch_and_store_monthly_data(
        self,
        client_id: str,
        period: str,
        start_date: str,
        end_date: str,
        granularity: Granularity = Granularity.MONTHLY,
    ) -> bool:
        """Fetch one month for a client and persist it.

        Args:
            client_id: Client whose analytics property is fetched.
            period: Month key, YYYY-MM.
            start_date: First day of the month, YYYY-MM-DD.
            end_date: Last day of the month, YYYY-MM-DD.
            granularity: Daily rows ("YYYY-MM-daily-YYYYMMDD") or one monthly row.

        Returns:
            True when the provider stored the data.
        """
        ...

    async def close(self) -> None:
        return None


class HttpFetchProvider(FetchProvider):
    """Delegates fetches to the ingestion service over HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
    ):
        self.base_url = (base_url or settings.fetch_provider_url).rstrip("/")
        self.token = token if token is not None else settings.fetch_provider_token
        self.max_retries = max_retries or settings.fetch_provider_max_retries
        self.retry_delay = (
            settings.fetch_provider_retry_delay if retry_delay is None else retry_delay
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(
                timeout=settings.fetch_provider_timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST with retry on 429, 5xx and transport errors."""
        client = await self._get_client()

        for attempt in range(1, self.max_retries + 1):
            wait = self.retry_delay * (2 ** (attempt - 1))
            try:
                resp = await client.post(url, json=payload)

                # Rate limited
                if resp.status_code == 429 and attempt < self.max_retries:
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp.json() if resp.content else {}

            except httpx.HTTPStatusError as e:
                if attempt < self.max_retries and e.response.status_code >= 500:
                    logger.warning(
                        f"Server error {e.response.status_code}. Retrying in {wait}s"
                    )
                    await asyncio.sleep(wait)
                    continue
                raise FetchProviderError(
                    f"Ingestion service returned {e.response.status_code}",
                    e.response.status_code,
                ) from e

            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise FetchProviderError(
                    f"Connection failed after {self.max_retries} retries: {e}"
                ) from e

        raise FetchProviderError("Max retries exhausted")

    async def fetch_and_store_monthly_data(
        self,
        client_id: str,
        period: str,
        start_date: str,
        end_date: str,
        granularity: Granularity = Granularity.MONTHLY,
    ) -> bool:
        url = f"{self.base_url}/clients/{client_id}/fetch"
        payload = {
            "period": period,
            "start_date": start_date,
            "end_date": end_date,
            "granularity": granularity.value,
        }
        try:
            result = await self._request(url, payload)
        except FetchProviderError as e:
            logger.error(
                f"Fetch failed for {period}: {e}",
                extra={"client_id": client_id, "period": period, "status_code": e.status_code},
            )
            return False
        stored = bool(result.get("success", True))
        logger.info(
            f"Fetched {granularity.value} data for {period} (stored={stored})",
            extra={"client_id": client_id, "period": period},
        )
        return stored
