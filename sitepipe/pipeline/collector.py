"""Site collection: drive the Page Agent through one site configuration.

A collection never raises. Whatever went wrong (open, load, extraction or
pagination) ends collection for that site, and the records gathered up to
that point are returned together with the error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, TypeVar

from .config import EngineSettings

if TYPE_CHECKING:
    from sitepipe.clock import Clock
    from sitepipe.integrations.page_agent import PageAgent
    from sitepipe.registry import Pipeline, SiteConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollectionError(Exception):
    """Site-level failure. Partial results are kept and the pipeline continues."""

    def __init__(self, url: str, message: str, page: int | None = None) -> None:
        location = f"{url} (page {page})" if page is not None else url
        super().__init__(f"{location}: {message}")
        self.url = url
        self.page = page


@dataclass
class SiteCollection:
    """Records gathered from one site plus how far collection got.

    Attributes:
        url: The site URL.
        records: Provenance-tagged records in page order.
        pages_collected: Number of pages that were extracted.
        error: Why collection stopped early, if it did.
    """

    url: str
    records: list[dict[str, Any]] = field(default_factory=list)
    pages_collected: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "records": len(self.records),
            "pages_collected": self.pages_collected,
            "error": self.error,
        }


async def call_agent(
    awaitable: Awaitable[T],
    *,
    timeout: float,
    url: str,
    operation: str,
    page: int | None = None,
) -> T:
    """Await one Page Agent call with a bounded timeout.

    Any failure, including a timeout, is re-raised as :class:`CollectionError`.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CollectionError(url, f"{operation} timed out after {timeout:.0f}s", page) from exc
    except Exception as exc:
        raise CollectionError(url, f"{operation} failed: {exc}", page) from exc


async def collect_from_site(
    site: "SiteConfig",
    pipeline: "Pipeline",
    agent: "PageAgent",
    *,
    clock: "Clock",
    settings: EngineSettings | None = None,
) -> SiteCollection:
    """Collect records from one site, following pagination up to ``max_pages``.

    The page handle is always closed, whether collection finished, stopped on
    an error, or was cancelled.
    """
    settings = settings or EngineSettings()
    timeout = settings.page_timeout
    wait_seconds = site.wait_time_ms / 1000
    result = SiteCollection(url=site.url)
    handle = None
    page_number = 1

    logger.info("Collecting from %s (max %d pages)", site.url, site.max_pages)
    try:
        handle = await call_agent(
            agent.open(site.url, headers=site.headers, cookies=site.cookies),
            timeout=timeout,
            url=site.url,
            operation="open",
        )
        await call_agent(agent.await_load(handle), timeout=timeout, url=site.url, operation="load")
        await clock.sleep(wait_seconds)

        while page_number <= site.max_pages:
            logger.debug("Collecting page %d of %s", page_number, site.url)
            page_records = await call_agent(
                agent.extract(handle, site.selectors, pipeline.data_schema),
                timeout=timeout,
                url=site.url,
                operation="extract",
                page=page_number,
            )
            collected_at = clock.now().isoformat()
            try:
                tagged = [
                    {
                        **record,
                        "_source": site.url,
                        "_collected_at": collected_at,
                        "_page": page_number,
                        "_pipeline": pipeline.id,
                    }
                    for record in page_records or []
                ]
            except TypeError as exc:
                raise CollectionError(site.url, f"extract returned malformed records: {exc}", page_number) from exc
            result.records.extend(tagged)
            result.pages_collected = page_number

            if site.pagination is None or page_number >= site.max_pages:
                break

            has_next = await call_agent(
                agent.paginate_next(handle, site.pagination),
                timeout=timeout,
                url=site.url,
                operation="paginate",
                page=page_number,
            )
            if not has_next:
                logger.debug("No next page after page %d of %s", page_number, site.url)
                break

            await clock.sleep(wait_seconds)
            page_number += 1

    except CollectionError as exc:
        result.error = str(exc)
        logger.warning(
            "Collection stopped for pipeline %s: %s (%d records kept)",
            pipeline.id,
            exc,
            len(result.records),
        )
    finally:
        if handle is not None:
            try:
                await call_agent(agent.close(handle), timeout=timeout, url=site.url, operation="close")
            except CollectionError as exc:
                logger.warning("Failed to release page handle: %s", exc)

    logger.info(
        "Collected %d records from %s across %d pages",
        len(result.records),
        site.url,
        result.pages_collected,
    )
    return result
