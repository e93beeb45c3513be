from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from backend.src.config import Settings
from backend.src.contracts.models import (
    CatalogPage,
    Category,
    RawCategory,
    Snapshot,
    Store,
    utc_now,
)
from backend.src.scraper.normalizer import SnapshotNormalizer

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_USER_AGENTS: list[str] = [
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15"
    ),
    (
        "Mozilla/5.0 (X11; Linux x86_64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) "
        "Gecko/20100101 Firefox/121.0"
    ),
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.2; rv:121.0) "
        "Gecko/20100101 Firefox/121.0"
    ),
]

_RATE_LIMITED = 429


def _random_user_agent() -> str:
    return random.choice(_USER_AGENTS)


def _random_seconds(min_ms: int, max_ms: int) -> float:
    return random.randint(min_ms, max_ms) / 1000.0


@dataclass
class PageFetch:
    """Raw catalog pages of one store, in page order."""

    pages: list[list[Any]] = field(default_factory=list)
    complete: bool = True
    error: str | None = None


class CatalogFetcher:
    """Paginated catalog ingestion for one store at a time.

    Every request waits a random delay first and occasionally rotates the
    User-Agent. A 429 response gets one long random wait and one resend.
    Any other failure stops the store's ingestion; the pages fetched so far
    are kept.
    """

    def __init__(
        self,
        settings: Settings,
        normalizer: SnapshotNormalizer | None = None,
    ) -> None:
        self._settings = settings
        self._normalizer = normalizer or SnapshotNormalizer(
            site_url=settings.catalog_site_url,
            market_path=settings.catalog_market_path,
        )
        self._client: httpx.AsyncClient | None = None
        self._user_agent = _random_user_agent()

    @property
    def page_size(self) -> int:
        return self._settings.catalog_page_size

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "User-Agent": self._user_agent,
                "Accept": "application/json, text/plain, */*",
                "Accept-Language": "it-IT,it;q=0.9,en-US;q=0.8,en;q=0.7",
                "Cache-Control": "no-cache",
                "Pragma": "no-cache",
                "Sec-Fetch-Dest": "empty",
                "Sec-Fetch-Mode": "cors",
                "Sec-Fetch-Site": "same-site",
            },
            follow_redirects=True,
            timeout=httpx.Timeout(self._settings.http_timeout_seconds),
        )

    async def initialize(self) -> None:
        self._get_client()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client()
            logger.info("catalog_client_ready", page_size=self.page_size)
        return self._client

    async def cleanup(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _before_request(self) -> None:
        delay = _random_seconds(
            self._settings.request_delay_min_ms, self._settings.request_delay_max_ms
        )
        await asyncio.sleep(delay)
        if random.random() < self._settings.user_agent_rotation_probability:
            self._user_agent = _random_user_agent()
            logger.debug("user_agent_rotated")

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        client = self._get_client()

        await self._before_request()
        response = await client.get(url, params=params, headers={"User-Agent": self._user_agent})
        if response.status_code == _RATE_LIMITED:
            backoff = _random_seconds(
                self._settings.rate_limit_backoff_min_ms,
                self._settings.rate_limit_backoff_max_ms,
            )
            logger.warning("rate_limited", url=url, backoff_seconds=backoff)
            await asyncio.sleep(backoff)
            response = await client.get(
                url, params=params, headers={"User-Agent": self._user_agent}
            )
        response.raise_for_status()
        return response.json()

    async def fetch_categories(self, store: Store) -> list[Category]:
        url = (
            f"{self._settings.catalog_categories_url.rstrip('/')}/"
            f"{self._settings.catalog_market_path.strip('/')}/{store.id}"
        )
        log = logger.bind(store_id=store.id)
        try:
            payload = await self._get_json(url)
        except (httpx.HTTPError, ValueError) as exc:
            log.error("categories_fetch_failed", error=str(exc))
            return []

        if not isinstance(payload, list):
            log.warning("categories_unexpected_payload", payload_type=type(payload).__name__)
            return []

        categories: list[Category] = []
        for raw in payload:
            try:
                category = RawCategory.model_validate(raw)
            except ValidationError:
                log.warning("category_skipped", raw=str(raw)[:200])
                continue
            categories.append(
                Category(
                    id=str(category.id),
                    name=category.name,
                    description=category.category_code,
                )
            )
        return categories

    async def fetch_page(self, store: Store, page: int) -> list[Any]:
        params = {
            "languageCode": self._settings.catalog_language_code,
            "size": self.page_size,
            "storeIds": store.id,
            "page": page,
        }
        payload = await self._get_json(self._settings.catalog_products_url, params=params)
        return CatalogPage.model_validate(payload).content or []

    async def fetch_pages(self, store: Store) -> PageFetch:
        """Fetch pages until one is empty or shorter than the page size."""
        log = logger.bind(store_id=store.id)
        result = PageFetch()
        page = 0

        while True:
            try:
                items = await self.fetch_page(store, page)
            except (httpx.HTTPError, ValueError) as exc:
                result.complete = False
                result.error = f"page {page}: {exc}"
                log.error(
                    "catalog_ingestion_aborted",
                    page=page,
                    pages_fetched=len(result.pages),
                    error=str(exc),
                )
                break

            if not items:
                break

            result.pages.append(items)
            log.debug("catalog_page_fetched", page=page, items=len(items))
            page += 1

            if len(items) < self.page_size:
                break

        log.info(
            "catalog_pages_fetched",
            pages=len(result.pages),
            items=sum(len(p) for p in result.pages),
            complete=result.complete,
        )
        return result

    def to_snapshot(
        self,
        store: Store,
        fetched: PageFetch,
        observed_at: datetime | None = None,
    ) -> Snapshot:
        """Normalize fetched pages into one Snapshot sharing a single timestamp."""
        now = observed_at or utc_now()
        products = [
            product
            for page in fetched.pages
            for product in self._normalizer.normalize(page, store, observed_at=now)
        ]
        return Snapshot(
            store_id=store.id,
            products=tuple(products),
            pages_fetched=len(fetched.pages),
            complete=fetched.complete,
            error=fetched.error,
        )

    async def fetch_catalog(
        self, store: Store, observed_at: datetime | None = None
    ) -> Snapshot:
        return self.to_snapshot(store, await self.fetch_pages(store), observed_at=observed_at)
