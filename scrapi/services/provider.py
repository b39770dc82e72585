"""
Scraping Provider Client.

Talks to the Oxylabs push-pull API: submit a google_ads query, check the job
status and fetch the parsed results once the job is done.

httpx errors are translated into the domain hierarchy at this boundary:
timeouts and network failures become ConnectivityError, 408/429/5xx and
malformed bodies become a retryable ExternalServiceError, any other 4xx is
terminal.
"""

from typing import Any

import httpx
import structlog

from scrapi.core.constants import (
    PROVIDER_DEVICE,
    PROVIDER_DONE_STATES,
    PROVIDER_FAILED_STATES,
    PROVIDER_LOCALE,
    PROVIDER_PAGES,
    PROVIDER_PENDING_STATES,
    PROVIDER_SOURCE,
)
from scrapi.core.exceptions import ConnectivityError, ExternalServiceError, JobNotReadyError
from scrapi.core.models import ProviderJobStatus
from scrapi.services.retry_utils import RETRYABLE_STATUS_CODES

logger = structlog.get_logger()


def build_submit_payload(query: str, location: str) -> dict[str, Any]:
    """Request body for a google_ads scrape with ad extraction enabled."""
    return {
        "source": PROVIDER_SOURCE,
        "query": query,
        "geo_location": location,
        "device": PROVIDER_DEVICE,
        "parse": True,
        "start_page": 1,
        "pages": PROVIDER_PAGES,
        "locale": PROVIDER_LOCALE,
        "user_agent_type": PROVIDER_DEVICE,
        "context": [{"key": "ad_extraction", "value": "true"}],
    }


def classify_status(raw: Any) -> ProviderJobStatus | None:
    """Map a provider status string onto pending/done/failed, None if unknown."""
    value = str(raw or "").strip().lower()
    if value in PROVIDER_DONE_STATES:
        return ProviderJobStatus.DONE
    if value in PROVIDER_PENDING_STATES:
        return ProviderJobStatus.PENDING
    if value in PROVIDER_FAILED_STATES:
        return ProviderJobStatus.FAILED
    return None


class ProviderClient:
    """
    Async client for the scraping provider.

    One httpx.AsyncClient is shared for the lifetime of the process; pass a
    preconfigured client (e.g. with a MockTransport) to override it.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            auth=(username, password),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )
        self.log = logger.bind(component="ProviderClient")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"Provider request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"Provider unreachable: {e}") from e
        except httpx.RequestError as e:
            # Undecodable body, redirect loop
            raise ExternalServiceError(
                f"Provider request failed for {method} {path}: {e}",
                retryable=True,
            ) from e

        if response.status_code >= 400:
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            raise ExternalServiceError(
                f"Provider returned HTTP {response.status_code} for {method} {path}",
                status_code=response.status_code,
                retryable=retryable,
                details={"body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"Provider returned a non-JSON body for {method} {path}",
                status_code=response.status_code,
                retryable=True,
            ) from e

        if not isinstance(data, dict):
            raise ExternalServiceError(
                f"Provider returned an unexpected body for {method} {path}",
                status_code=response.status_code,
                retryable=True,
            )
        return data

    async def submit_job(self, query: str, location: str) -> dict[str, Any]:
        """Submit a scrape; returns the provider's job document (with its ``id``)."""
        log = self.log.bind(query=query[:80], location=location)
        data = await self._request("POST", "/queries", json=build_submit_payload(query, location))
        if not data.get("id"):
            raise ExternalServiceError("Provider accepted the job but returned no id")
        log.info("Job submitted to provider", provider_job_id=data["id"], status=data.get("status"))
        return data

    async def get_job_status(self, job_id: str) -> ProviderJobStatus:
        data = await self._request("GET", f"/queries/{job_id}")
        status = classify_status(data.get("status"))
        if status is None:
            raise ExternalServiceError(
                f"Unknown provider status '{data.get('status')}' for job {job_id}",
                retryable=True,
            )
        return status

    async def get_results(self, job_id: str) -> dict[str, Any]:
        """Fetch the parsed results document ``{job, results: [...]}``."""
        data = await self._request("GET", f"/queries/{job_id}/results", params={"type": "parsed"})
        if not isinstance(data.get("results"), list):
            raise ExternalServiceError(
                f"Parsed results for job {job_id} carry no result list",
                retryable=True,
            )
        return data

    async def fetch_ready_results(self, job_id: str) -> dict[str, Any]:
        """
        One polling attempt: check the status, then fetch results if done.

        Raises:
            JobNotReadyError: job is still pending or running (retryable)
            ExternalServiceError: provider reports the job failed (terminal)
        """
        status = await self.get_job_status(job_id)
        if status == ProviderJobStatus.PENDING:
            raise JobNotReadyError(job_id, status.value)
        if status == ProviderJobStatus.FAILED:
            raise ExternalServiceError(
                f"Provider reports job {job_id} as failed",
                retryable=False,
            )
        self.log.debug("Provider job done, fetching results", provider_job_id=job_id)
        return await self.get_results(job_id)
