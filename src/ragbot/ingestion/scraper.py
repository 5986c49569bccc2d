"""Client for the external scraper that turns start URLs into dataset items."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from ragbot.core.config import ScraperSettings

from .errors import ScraperError
from .models import PageItem, PdfItem, ScrapeOptions, parse_dataset_item

logger = logging.getLogger(__name__)

DatasetItem = PageItem | PdfItem


class ScraperRunner(Protocol):
    async def run(self, options: ScrapeOptions) -> list[DatasetItem]:
        ...


class HttpScraperRunner:
    """Posts scrape options to the scraper service and parses the returned dataset.

    The service answers with either a JSON list of items or ``{"items": [...]}``.
    Records that are neither pages nor PDFs are skipped.
    """

    def __init__(
        self,
        *,
        url: str,
        api_key: str | None = None,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def run(self, options: ScrapeOptions) -> list[DatasetItem]:
        try:
            response = await self._client.post(
                "/scrape", json=options.model_dump(by_alias=True, exclude_none=True)
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ScraperError(f"scraper request failed: {exc}") from exc

        body: Any = response.json()
        raw_items = body.get("items", []) if isinstance(body, dict) else body
        if not isinstance(raw_items, list):
            raise ScraperError("scraper returned an unexpected payload", retryable=False)

        items: list[DatasetItem] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            try:
                item = parse_dataset_item(raw)
            except ValueError:
                logger.warning("skipping malformed dataset item", extra={"keys": sorted(raw)})
                continue
            if item is not None:
                items.append(item)
        return items

    async def close(self) -> None:
        await self._client.aclose()


def create_scraper_runner(settings: ScraperSettings) -> ScraperRunner | None:
    """Return the HTTP runner, or ``None`` when no scraper URL is configured."""

    if not settings.url:
        return None
    return HttpScraperRunner(
        url=settings.url,
        api_key=settings.api_key,
        timeout=settings.timeout_seconds,
    )
