"""
Async gateway for the amoCRM v4 API.

Every upstream read and write of the relay goes through AmoCRMClient:
- Paginated lead listing filtered by tags and pipeline status
- Single-lead PATCH (status changes)
- Contact lookup and lead enrichment

List requests are cached per exact parameter set and draw from a
fixed-window request budget. Callers that must see amoCRM's current state
(webhooks, full syncs, reconciliation) pass ``use_cache=False`` and skip the
fresh lookup. When the budget is spent, a stale cached response is served
if one exists; otherwise RateLimitExceeded is raised.
Nothing is retried here: retry and abandonment policy belongs to callers.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from relay.cache import ResponseCache
from relay.config import AmoCRMConfig, CacheConfig, config
from relay.exceptions import RateLimitExceeded, UpstreamError
from relay.models import ContactSummary, LeadPage, LeadSweep, Order
from relay.observability import Timer, get_correlation_id, get_logger
from relay.resilience import RequestBudget

logger = get_logger(__name__)


@dataclass(frozen=True)
class LeadFilter:
    """Which leads to ask amoCRM for: tags within one pipeline status."""
    tags: tuple
    pipeline_id: int
    status_id: int

    @classmethod
    def for_tags(cls, tags: Iterable[str], settings: AmoCRMConfig = None) -> "LeadFilter":
        settings = settings or config.amocrm
        return cls(
            tags=tuple(tags),
            pipeline_id=settings.pipeline_id,
            status_id=settings.status_id,
        )

    def to_params(self, page: int, page_size: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "with": "contacts",
            "filter[statuses][0][pipeline_id]": self.pipeline_id,
            "filter[statuses][0][status_id]": self.status_id,
            "limit": page_size,
            "page": page,
        }
        for i, tag in enumerate(self.tags):
            params[f"filter[tags][{i}]"] = tag
        return params


def lead_tag_names(lead: Order) -> List[str]:
    """Tag names embedded in a lead."""
    embedded = lead.get("_embedded") or {}
    return [t.get("name") for t in embedded.get("tags") or [] if t.get("name")]


def lead_contact_id(lead: Order) -> Optional[int]:
    """Id of the first contact embedded in a lead, if any."""
    embedded = lead.get("_embedded") or {}
    contacts = embedded.get("contacts") or []
    if contacts:
        return contacts[0].get("id")
    return None


def _extract_phone(contact: Dict[str, Any], work_phone_field_id: int) -> Optional[str]:
    """
    Work phone of the configured field if present, else the first value of
    any phone-type field.
    """
    fields = contact.get("custom_fields_values") or []

    for f in fields:
        if f.get("field_id") == work_phone_field_id:
            for value in f.get("values") or []:
                if value.get("enum_code") == "WORK" and value.get("value"):
                    return value["value"]

    for f in fields:
        if f.get("field_type") == "phone" or f.get("field_code") == "PHONE":
            values = f.get("values") or []
            if values and values[0].get("value"):
                return values[0]["value"]

    return None


class AmoCRMClient:
    """
    Async HTTP client for amoCRM with response cache and request budget.

    Usage:
        async with AmoCRMClient() as client:
            page = await client.fetch_page(LeadFilter.for_tags(["sasha"]), page=1, page_size=10)

        # Or with manual lifecycle:
        client = AmoCRMClient()
        await client.connect()
        try:
            sweep = await client.fetch_all_pages(lead_filter)
        finally:
            await client.close()
    """

    def __init__(
        self,
        settings: AmoCRMConfig = None,
        cache_settings: CacheConfig = None,
        cache: ResponseCache = None,
        budget: RequestBudget = None,
        page_delay: float = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or config.amocrm
        cache_settings = cache_settings or config.cache
        self.cache = cache or ResponseCache(
            ttl=cache_settings.ttl_seconds,
            max_stale_age=cache_settings.max_stale_age_seconds,
        )
        self.budget = budget or RequestBudget(
            limit=cache_settings.budget_requests,
            window=cache_settings.budget_window_seconds,
        )
        self.page_delay = config.sync.page_delay_seconds if page_delay is None else page_delay
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth."""
        return {
            "Authorization": f"Bearer {self.settings.token}",
            "Accept": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                headers=self.headers,
                timeout=self.settings.request_timeout,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AmoCRMClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make one HTTP request to amoCRM.

        Raises:
            UpstreamError: transport failure or non-2xx status
        """
        if not self._client:
            await self.connect()

        headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"amocrm {method} {endpoint}", logger):
                response = await self._client.request(
                    method,
                    endpoint,
                    params=params,
                    json=json,
                    headers=headers or None,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"amoCRM timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": self.settings.request_timeout},
            )
            raise UpstreamError(
                f"amoCRM request timed out after {self.settings.request_timeout}s"
            ) from e
        except httpx.RequestError as e:
            logger.error(
                f"amoCRM request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint},
            )
            raise UpstreamError("amoCRM request failed", details=str(e)) from e

        if response.status_code >= 400:
            error_text = response.text[:500]
            logger.error(
                f"amoCRM error {response.status_code}: {error_text}",
                extra={"endpoint": endpoint, "status_code": response.status_code},
            )
            raise UpstreamError(
                f"amoCRM returned {response.status_code}",
                details=error_text,
                upstream_status=response.status_code,
            )

        # amoCRM answers an empty list with 204 and no body
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # ═══════════════════════════════════════════════════════════════════════════
    # LEADS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _cached_list(self, params: Dict[str, Any], use_cache: bool = True) -> tuple:
        """Return (response, from_cache) honoring cache freshness and budget."""
        key = self.cache.make_key(params)

        if use_cache:
            cached = self.cache.get_fresh(key)
            if cached is not None:
                return cached, True

        if not self.budget.try_acquire():
            stale = self.cache.get_stale(key)
            if stale is not None:
                return stale, True
            raise RateLimitExceeded(retry_after=self.budget.reset_in())

        response = await self._request("GET", "/leads", params=params)
        self.cache.set(key, response)
        return response, False

    async def fetch_page(
        self,
        lead_filter: LeadFilter,
        page: int = 1,
        page_size: int = None,
        use_cache: bool = True,
    ) -> LeadPage:
        """
        Fetch one bounded page of leads.

        Leads whose embedded tags do not intersect the filter are dropped;
        ``raw_count`` still reports what amoCRM returned so pagination can
        tell a short page from a filtered one. With ``use_cache=False`` the
        request goes upstream whenever the budget allows; the cached entry is
        only the fallback for a spent budget.

        Raises:
            UpstreamError: request failed
            RateLimitExceeded: budget spent and nothing cached for these params
        """
        page_size = page_size or self.settings.webhook_page_size
        params = lead_filter.to_params(page, page_size)
        response, from_cache = await self._cached_list(params, use_cache=use_cache)

        raw = (response.get("_embedded") or {}).get("leads") or []
        wanted = set(lead_filter.tags)
        leads = [lead for lead in raw if wanted.intersection(lead_tag_names(lead))]

        return LeadPage(
            leads=leads,
            total=response.get("_total", len(raw)),
            raw_count=len(raw),
            from_cache=from_cache,
        )

    async def fetch_all_pages(
        self,
        lead_filter: LeadFilter,
        page_size: int = None,
        use_cache: bool = True,
    ) -> LeadSweep:
        """
        Walk pages until one comes back shorter than ``page_size``.

        Pages are spaced by ``page_delay`` seconds. On an error the walk stops
        and returns what it has with ``complete=False``. Pages answered from
        the cache are counted in ``cached_pages``.
        """
        page_size = page_size or self.settings.sweep_page_size
        sweep = LeadSweep()

        for page in range(1, self.settings.max_pages + 1):
            if page > 1:
                await self._sleep(self.page_delay)
            try:
                result = await self.fetch_page(
                    lead_filter, page=page, page_size=page_size, use_cache=use_cache
                )
            except UpstreamError as e:
                logger.warning(
                    f"Lead sweep stopped at page {page}: {e}",
                    extra={"tags": list(lead_filter.tags), "collected": len(sweep.leads)},
                )
                sweep.complete = False
                return sweep

            sweep.pages = page
            if result.from_cache:
                sweep.cached_pages += 1
            sweep.leads.extend(result.leads)
            if result.raw_count < page_size:
                return sweep

        logger.warning(
            f"Lead sweep hit max_pages={self.settings.max_pages}",
            extra={"tags": list(lead_filter.tags)},
        )
        sweep.complete = False
        return sweep

    async def patch_lead(self, lead_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        PATCH a single lead.

        Raises:
            UpstreamError: carrying amoCRM's status code
        """
        return await self._request("PATCH", f"/leads/{lead_id}", json=fields)

    # ═══════════════════════════════════════════════════════════════════════════
    # CONTACTS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_contact(self, contact_id: int) -> Dict[str, Any]:
        """Get a single contact (uncached)."""
        return await self._request("GET", f"/contacts/{contact_id}")

    async def resolve_contact(self, lead: Order) -> ContactSummary:
        """Name and phone of the lead's first contact, or the unknown sentinel."""
        contact_id = lead_contact_id(lead)
        if not contact_id:
            return ContactSummary.unknown()

        try:
            return await self.contact_summary(contact_id)
        except UpstreamError as e:
            logger.warning(
                f"Contact lookup failed for lead {lead.get('id')}: {e}",
                extra={"contact_id": contact_id},
            )
            return ContactSummary.unknown(contact_id)

    async def contact_summary(self, contact_id: int) -> ContactSummary:
        """
        Name and phone of one contact; missing fields keep the unknown sentinels.

        Raises:
            UpstreamError: lookup failed
        """
        contact = await self.get_contact(contact_id)
        summary = ContactSummary.unknown(contact_id)
        if contact.get("name"):
            summary.name = contact["name"]
        phone = _extract_phone(contact, self.settings.work_phone_field_id)
        if phone:
            summary.phone = phone
        return summary

    async def enrich_leads(self, leads: Sequence[Order]) -> List[Order]:
        """Attach ``contact`` to every lead; one failed lookup never aborts the rest."""
        for lead in leads:
            summary = await self.resolve_contact(lead)
            lead["contact"] = summary.to_dict()
        return list(leads)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats.to_dict(),
            "cached_entries": len(self.cache),
            "budget": self.budget.to_dict(),
        }
