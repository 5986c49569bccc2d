"""Job payloads and scraper dataset items for knowledge ingestion."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TextJobPayload(BaseModel):
    """Payload stored on a TEXT ingestion job."""

    knowledge_source_id: str
    title: str = Field(..., min_length=1)
    content: str
    source_key: str | None = None
    canonical_url: str | None = None
    original_url: str | None = None
    extraction_method: str | None = None
    text_quality: str | None = None


class ScrapeOptions(BaseModel):
    """Options forwarded verbatim to the scraper for a SCRAPE job."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    start_urls: list[str] = Field(..., min_length=1, alias="startUrls")
    max_depth: int | None = Field(default=None, ge=0, alias="maxDepth")
    max_pages: int | None = Field(default=None, ge=1, alias="maxPages")
    include_globs: list[str] | None = Field(default=None, alias="includeGlobs")
    exclude_globs: list[str] | None = Field(default=None, alias="excludeGlobs")
    respect_robots_txt: bool = Field(default=True, alias="respectRobotsTxt")

    @field_validator("start_urls")
    @classmethod
    def _validate_urls(cls, value: list[str]) -> list[str]:
        for url in value:
            if not url.startswith(("http://", "https://")):
                msg = f"start url must be http(s): {url}"
                raise ValueError(msg)
        return value


class ScrapeJobPayload(BaseModel):
    options: ScrapeOptions


class DeleteSourceJobPayload(BaseModel):
    knowledge_source_id: str


class PdfPage(BaseModel):
    page_no: int
    text: str = ""


class PdfOverall(BaseModel):
    model_config = ConfigDict(extra="allow")

    page_count: int | None = None


class PdfItem(BaseModel):
    """A PDF discovered by the scraper, with per-page text when extraction succeeded."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["pdf"] = "pdf"
    pdf_url: str
    title: str | None = None
    pages: list[PdfPage] | None = None
    perplexity_content: str | None = None
    extraction_method: str | None = None
    text_quality: str | None = None
    source_page: str | None = None
    fetched_at: str | None = None
    overall: PdfOverall | None = None


class PageItem(BaseModel):
    """A crawled web page with its extracted main text."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["page"] = "page"
    page_url: str
    canonical_url: str | None = None
    title: str | None = None
    main_text: str | None = None
    fetched_at: str | None = None
    lang: Any = None
    meta: dict[str, Any] = Field(default_factory=dict)
    pdfs: list[PdfItem] = Field(default_factory=list)


def parse_dataset_item(raw: dict[str, Any]) -> PageItem | PdfItem | None:
    """Classify a raw scraper record; unknown shapes yield ``None``."""

    item_type = raw.get("type")
    if item_type == "pdf" or (item_type is None and "pdf_url" in raw):
        return PdfItem.model_validate({**raw, "type": "pdf"})
    if item_type == "page" or (item_type is None and "page_url" in raw):
        return PageItem.model_validate({**raw, "type": "page"})
    return None
