"""
HTTP client for the upstream SaaS platform API.

Wraps an httpx.AsyncClient and adapts list endpoints to the
(offset, limit) -> {data, total} page-fetch contract used by pagination
and streaming exports.
"""

import asyncio
import httpx
from typing import Any, Dict, List, Optional
from recordexport.core.config import settings
from recordexport.core.exceptions import PlatformAPIError
from recordexport.core.logging_config import logger
from recordexport.schemas.export import PageResult, SampleCollectionSummary
from recordexport.services.pagination import fetch_all_pages


class PlatformClient:
    """Client for the platform REST API."""

    # Map entity types to their list endpoints
    ENDPOINTS = {
        "issue": "/issues",
        "company": "/companies",
        "enduser": "/endusers",
        "user": "/users",
        "workflow": "/workflowtemplates",
        "asset": "/assets",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize platform client.

        Args:
            base_url: API base URL (defaults to settings)
            api_token: Bearer token (defaults to settings)
            client: Preconfigured httpx.AsyncClient, mainly for tests
        """
        self.base_url = (base_url or settings.PLATFORM_API_BASE_URL).rstrip("/")
        self.api_token = api_token or settings.PLATFORM_API_TOKEN
        if not self.api_token and client is None:
            logger.warning("PLATFORM_API_TOKEN not set. Platform requests will be unauthenticated.")

        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=settings.PLATFORM_API_TIMEOUT,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform a GET request and return the decoded JSON body.

        Raises:
            PlatformAPIError: On non-2xx responses or transport failures
        """
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Platform API error {e.response.status_code} for {path}: {e.response.text[:200]}")
            raise PlatformAPIError(
                f"Platform API returned {e.response.status_code} for {path}",
                status_code=e.response.status_code,
            )
        except httpx.HTTPError as e:
            logger.error(f"Platform API request failed for {path}: {str(e)}")
            raise PlatformAPIError(f"Platform API request failed for {path}: {str(e)}")

    def endpoint_for(self, entity_type: str) -> str:
        endpoint = self.ENDPOINTS.get(entity_type)
        if not endpoint:
            raise ValueError(f"Unknown entity type: {entity_type}")
        return endpoint

    def page_fetcher(self, entity_type: str, filters: Optional[Dict[str, Any]] = None):
        """
        Build an (offset, limit) page-fetch callable for an entity type.

        Both bare-array responses and {data, total} envelopes are accepted.
        """
        endpoint = self.endpoint_for(entity_type)
        filters = dict(filters or {})

        async def fetch_page(offset: int, limit: int) -> PageResult:
            params = {**filters, "offset": offset, "limit": limit}
            body = await self.get(endpoint, params=params)
            if isinstance(body, list):
                return PageResult(data=body)
            if isinstance(body, dict):
                return PageResult(data=body.get("data") or [], total=body.get("total"))
            logger.warning(f"Unexpected page shape from {endpoint}: {type(body).__name__}")
            return PageResult(data=[])

        return fetch_page

    def create_paginated_data_provider(self, entity_type: str, filters: Optional[Dict[str, Any]] = None):
        """
        Create a data provider for streaming exports.

        Each provider call fetches exactly the requested window, split into
        platform-sized pages when the window exceeds the ceiling.
        """
        fetch_page = self.page_fetcher(entity_type, filters)

        async def provider(offset: int, limit: int) -> PageResult:
            result = await fetch_all_pages(fetch_page, limit=limit, offset=offset, max_records=limit)
            return PageResult(data=result.data, total=result.total)

        return provider

    async def fetch_sample(self, entity_type: str, limit: int = 100) -> List[Any]:
        """Fetch the first page of records for field discovery"""
        page = await self.page_fetcher(entity_type)(0, min(limit, settings.MAX_PAGE_SIZE))
        return page.data

    async def collect_samples(self, entity_types: List[str], limit: int = 100) -> SampleCollectionSummary:
        """
        Fetch one sample page per entity type.

        A failing endpoint is counted and reported; it does not abort the batch.
        """
        if not entity_types:
            return SampleCollectionSummary(completed=0, failed=0)

        logger.info(f"Collecting samples for {len(entity_types)} entity types")
        results = await asyncio.gather(
            *(self.fetch_sample(entity_type, limit) for entity_type in entity_types),
            return_exceptions=True,
        )

        samples: Dict[str, List[Any]] = {}
        errors: List[Dict[str, str]] = []
        for entity_type, result in zip(entity_types, results):
            if isinstance(result, BaseException):
                logger.error(f"Sample collection failed for '{entity_type}': {str(result)}")
                errors.append({"entity_type": entity_type, "error": str(result)})
            else:
                samples[entity_type] = result

        summary = SampleCollectionSummary(
            completed=len(samples),
            failed=len(errors),
            errors=errors,
            samples=samples,
        )
        logger.info(f"Sample collection finished: completed={summary.completed}, failed={summary.failed}")
        return summary
