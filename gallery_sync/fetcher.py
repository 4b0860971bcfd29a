"""
Tenant-scoped reader of the upstream gallery API.

This module provides page-at-a-time fetching with:
- Per-tenant token bucket rate limiting that never sleeps on an empty bucket
- Exponential backoff retry for transient failures inside one request
- Mapping of HTTP failures onto the sync error taxonomy
- Opaque cursors so the stage executor can resume on the next invocation
"""

import httpx
import asyncio
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Sequence
from core.config import settings
from core.exceptions import (
    FetchFailed,
    NetworkError,
    Throttled,
    AuthenticationError,
    UpstreamRejected,
    ResourceNotFoundError,
)
from core.tenants import Tenant, TenantDirectory
from gallery_sync.rate_limit import RateLimiterRegistry, rate_limiters
from models.base import SyncStage
from schemas.upstream import extract_case_id
import logging

logger = logging.getLogger(__name__)

SIDEBAR_PATH = "/api/plugin/combine/sidebar"
CASES_PATH = "/api/plugin/combine/cases"


@dataclass
class FetchPage:
    """One page of upstream records plus the cursor of the next page"""
    records: List[Dict[str, Any]]
    next_cursor: Optional[Dict[str, Any]]
    total: Optional[int] = None
    absent: List[int] = field(default_factory=list)  # case ids upstream answered 404 for
    throttled: Optional[Throttled] = None  # set when the page was cut short


class TenantFetcher:
    """
    Fetch upstream records one page at a time for a tenant.

    Pages per stage:
    - procedures: the whole sidebar (categories with nested procedures), one page
    - manifest: one count-page of case ids for one procedure id of the plan
    - cases: up to case_batch_size case details from the de-duplicated plan

    Attributes:
        max_retries: Attempts per request for transient failures
        retry_delay: Initial backoff delay in seconds
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        tenants: Optional[TenantDirectory] = None,
        base_url: Optional[str] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        case_batch_size: Optional[int] = None,
        manifest_max_pages: Optional[int] = None
    ):
        self.tenants = tenants or TenantDirectory.from_settings()
        self.base_url = (base_url or settings.GALLERY_API_BASE_URL).rstrip("/")
        self.limiters = limiters or rate_limiters
        self.max_retries = max_retries if max_retries is not None else settings.HTTP_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.HTTP_RETRY_DELAY
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.case_batch_size = case_batch_size or settings.CASE_BATCH_SIZE
        self.manifest_max_pages = manifest_max_pages or settings.MANIFEST_MAX_PAGES

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        tenant_key: str,
        stage: SyncStage,
        cursor: Optional[Dict[str, Any]],
        plan: Optional[Sequence[Any]] = None
    ) -> FetchPage:
        """
        Fetch the page at `cursor` for the given stage.

        Args:
            tenant_key: Tenant to fetch for
            stage: procedures, manifest or cases
            cursor: Cursor returned by the previous page, None for the first
            plan: Procedure ids (manifest) or [case_id, procedure_id] pairs (cases)

        Raises:
            Throttled: Rate budget exhausted before anything was fetched
            FetchFailed: Network, auth or upstream errors (see .retryable)
        """
        tenant = self.tenants.get(tenant_key)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            if stage == SyncStage.PROCEDURES:
                return await self._fetch_sidebar(client, tenant)
            if stage == SyncStage.MANIFEST:
                return await self._fetch_manifest_page(client, tenant, cursor, list(plan or []))
            if stage == SyncStage.CASES:
                return await self._fetch_case_page(client, tenant, cursor, list(plan or []))

        raise ValueError(f"Stage {stage} does not fetch from upstream")

    # ------------------------------------------------------------------
    # Stage pages
    # ------------------------------------------------------------------

    async def _fetch_sidebar(self, client: httpx.AsyncClient, tenant: Tenant) -> FetchPage:
        data = await self._post(client, tenant, SIDEBAR_PATH, {"apiTokens": [tenant.api_token]})
        categories = [c for c in (data or []) if isinstance(c, dict)]
        logger.info(f"Fetched {len(categories)} sidebar categories for {tenant.key}")
        return FetchPage(records=categories, next_cursor=None, total=len(categories))

    async def _fetch_manifest_page(
        self,
        client: httpx.AsyncClient,
        tenant: Tenant,
        cursor: Optional[Dict[str, Any]],
        procedure_ids: List[int]
    ) -> FetchPage:
        position = int((cursor or {}).get("procedure", 0))
        count = int((cursor or {}).get("count", 1))

        if position >= len(procedure_ids):
            return FetchPage(records=[], next_cursor=None, total=len(procedure_ids))

        procedure_id = procedure_ids[position]
        data = await self._post(
            client,
            tenant,
            CASES_PATH,
            {
                **self._scope(tenant),
                "procedureIds": [procedure_id],
                "count": count,
            }
        )

        case_ids = []
        for item in data or []:
            case_id = extract_case_id(item)
            if case_id and case_id not in case_ids:
                case_ids.append(case_id)

        if case_ids and count < self.manifest_max_pages:
            next_cursor = {"procedure": position, "count": count + 1}
        elif position + 1 < len(procedure_ids):
            next_cursor = {"procedure": position + 1, "count": 1}
        else:
            next_cursor = None

        logger.debug(
            f"Procedure {procedure_id} count {count}: {len(case_ids)} case ids for {tenant.key}"
        )
        return FetchPage(
            records=[{"procedure_id": procedure_id, "case_ids": case_ids}],
            next_cursor=next_cursor,
            total=len(procedure_ids)
        )

    async def _fetch_case_page(
        self,
        client: httpx.AsyncClient,
        tenant: Tenant,
        cursor: Optional[Dict[str, Any]],
        work: List[Sequence[int]]
    ) -> FetchPage:
        offset = int((cursor or {}).get("offset", 0))
        batch = work[offset:offset + self.case_batch_size]

        records: List[Dict[str, Any]] = []
        absent: List[int] = []
        throttled: Optional[Throttled] = None
        done = 0

        for case_id, procedure_id in batch:
            try:
                case = await self._fetch_case(client, tenant, int(case_id), int(procedure_id))
            except Throttled as e:
                if done == 0:
                    raise
                throttled = e
                break

            if case is None:
                absent.append(int(case_id))
            else:
                records.append(case)
            done += 1

        next_offset = offset + done
        next_cursor = {"offset": next_offset} if next_offset < len(work) else None

        return FetchPage(
            records=records,
            next_cursor=next_cursor,
            total=len(work),
            absent=absent,
            throttled=throttled
        )

    async def _fetch_case(
        self,
        client: httpx.AsyncClient,
        tenant: Tenant,
        case_id: int,
        procedure_id: int
    ) -> Optional[Dict[str, Any]]:
        """Case detail, or None when upstream says the case no longer exists"""
        try:
            data = await self._post(
                client,
                tenant,
                f"{CASES_PATH}/{case_id}",
                {**self._scope(tenant), "procedureIds": [procedure_id]}
            )
        except ResourceNotFoundError:
            logger.info(f"Case {case_id} not found upstream for {tenant.key}")
            return None

        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or not data:
            logger.info(f"Case {case_id} returned no data for {tenant.key}")
            return None
        return data

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _scope(tenant: Tenant) -> Dict[str, Any]:
        property_id = int(tenant.property_id) if str(tenant.property_id).isdigit() else tenant.property_id
        return {"apiTokens": [tenant.api_token], "websitePropertyIds": [property_id]}

    def _take_token(self, tenant: Tenant, url: str) -> None:
        bucket = self.limiters.bucket_for(tenant.key)
        if not bucket.try_acquire():
            retry_after = round(bucket.retry_after(), 3)
            raise Throttled(
                f"Rate limit reached for tenant {tenant.key}",
                context={"tenant_key": tenant.key, "api_url": url},
                retry_after=retry_after
            )

    async def _post(
        self,
        client: httpx.AsyncClient,
        tenant: Tenant,
        path: str,
        body: Dict[str, Any]
    ) -> Any:
        """
        POST with rate limiting, retry logic and exponential backoff.

        Returns:
            The "data" member of a successful response body

        Raises:
            Throttled: Local bucket empty or upstream HTTP 429
            NetworkError: Transient failure that outlived the retries
            AuthenticationError / UpstreamRejected / ResourceNotFoundError
        """
        url = f"{self.base_url}{path}"
        self._take_token(tenant, url)

        attempts = max(self.max_retries, 1)
        context = {"tenant_key": tenant.key, "api_url": url}

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                logger.debug(f"Request attempt {attempt + 1}/{attempts} to {url}")
                response = await client.post(url, json=body, timeout=self.timeout)
            except httpx.TimeoutException as e:
                if not last_attempt:
                    await self._backoff(attempt, "Request timeout")
                    continue
                raise NetworkError(
                    f"Request timeout after {attempts} attempts",
                    context={**context, "timeout": self.timeout, "retry_count": attempt + 1},
                    original_exception=e
                )
            except httpx.TransportError as e:
                if not last_attempt:
                    await self._backoff(attempt, "Network error")
                    continue
                raise NetworkError(
                    f"Network error after {attempts} attempts",
                    context={**context, "retry_count": attempt + 1},
                    original_exception=e
                )

            status = response.status_code

            if status in (401, 403):
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={**context, "status_code": status}
                )

            if status == 404:
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={**context, "status_code": 404}
                )

            if status == 429:
                retry_after = self._retry_after_header(response)
                raise Throttled(
                    f"Upstream rate limit hit for {url}",
                    context={**context, "status_code": 429},
                    retry_after=retry_after
                )

            if status >= 500:
                if not last_attempt:
                    await self._backoff(attempt, f"Server error {status}")
                    continue
                raise NetworkError(
                    f"Server error after {attempts} attempts",
                    context={
                        **context,
                        "status_code": status,
                        "retry_count": attempt + 1,
                        "response_body": response.text[:500]
                    }
                )

            if status >= 400:
                raise UpstreamRejected(
                    f"Upstream rejected request with status {status}",
                    context={**context, "status_code": status, "response_body": response.text[:500]}
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise FetchFailed(
                    "Failed to parse JSON response",
                    context={**context, "response_body": response.text[:500]},
                    original_exception=e,
                    retryable=True
                )

            if isinstance(payload, dict):
                if payload.get("success") is False:
                    raise UpstreamRejected(
                        "Upstream returned an unsuccessful response",
                        context={**context, "upstream_message": str(payload.get("message", ""))[:200]}
                    )
                return payload.get("data", [])
            return payload

        # Should never reach here
        raise NetworkError("Max retries exceeded", context=context)

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.retry_delay * (2 ** attempt)
        logger.warning(f"{reason}. Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})")
        if delay > 0:
            await asyncio.sleep(delay)

    @staticmethod
    def _retry_after_header(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None
