"""Page Agent: the collaborator that opens and manipulates browser pages.

The engine only talks to the :class:`PageAgent` protocol. The Playwright
implementation renders each handle in its own browser context and extracts
records from the rendered HTML with BeautifulSoup CSS selectors.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Protocol

import trafilatura
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

if TYPE_CHECKING:
    from playwright.async_api import Browser, Playwright

    from sitepipe.registry import PaginationConfig

logger = logging.getLogger(__name__)

DEFAULT_NAVIGATION_TIMEOUT = 30000

_handle_ids = itertools.count(1)


class PageAgentError(Exception):
    """Raised when the page agent cannot perform a requested operation."""


@dataclass(slots=True)
class PageHandle:
    """Opaque reference to one open page."""

    id: int
    url: str
    page: Any = None
    context: Any = None

    @classmethod
    def create(cls, url: str, page: Any = None, context: Any = None) -> "PageHandle":
        return cls(id=next(_handle_ids), url=url, page=page, context=context)


class PageAgent(Protocol):
    async def open(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        cookies: Mapping[str, str] | None = None,
    ) -> PageHandle: ...

    async def await_load(self, handle: PageHandle) -> None: ...

    async def extract(
        self,
        handle: PageHandle,
        selectors: Mapping[str, Any],
        schema: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def paginate_next(self, handle: PageHandle, config: "PaginationConfig") -> bool: ...

    async def click(self, handle: PageHandle, selector: str, wait_ms: int = 1000) -> None: ...

    async def fill_form(
        self,
        handle: PageHandle,
        fields: Mapping[str, Any],
        submit: bool | str = False,
    ) -> None: ...

    async def screenshot(self, handle: PageHandle) -> bytes: ...

    async def run_script(self, handle: PageHandle, code: str) -> Any: ...

    async def get_content(self, handle: PageHandle) -> dict[str, str]: ...

    async def close(self, handle: PageHandle) -> None: ...


def coerce_field(value: str | None, field_type: str | None) -> Any:
    """Convert extracted text according to the pipeline's field-type schema.

    Values that cannot be converted are returned as ``None`` rather than
    raising, so one malformed cell never discards a whole page.
    """
    if value is None:
        return None
    value = value.strip()
    if field_type in (None, "", "string", "text"):
        return value
    if field_type in ("number", "float"):
        cleaned = value.replace(",", "").lstrip("$€£")
        try:
            return float(cleaned)
        except ValueError:
            return None
    if field_type in ("integer", "int"):
        cleaned = value.replace(",", "")
        try:
            return int(float(cleaned))
        except ValueError:
            return None
    if field_type == "boolean":
        return value.lower() in ("true", "yes", "1", "on")
    return value


def _read_field(element: Any, selector: str) -> str | None:
    attribute = None
    if "@" in selector:
        selector, attribute = selector.rsplit("@", 1)
    target = element.select_one(selector) if selector else element
    if target is None:
        return None
    if attribute:
        value = target.get(attribute)
        if isinstance(value, list):
            return " ".join(value)
        return value
    return target.get_text(" ", strip=True)


def extract_records(
    html: str,
    selectors: Mapping[str, Any],
    schema: Mapping[str, str] | None = None,
) -> list[dict[str, Any]]:
    """Extract one record per ``container`` match from rendered HTML.

    ``selectors`` is ``{"container": css, "fields": {name: css}}``. A field
    selector may end in ``@attr`` to read an attribute instead of text
    (``"a@href"``; ``"@href"`` reads the container's own attribute).
    Containers where every field is empty are skipped.
    """
    schema = schema or {}
    soup = BeautifulSoup(html, "html.parser")
    container = selectors.get("container")
    fields: Mapping[str, str] = selectors.get("fields") or {}

    elements = soup.select(container) if container else [soup]
    records: list[dict[str, Any]] = []
    for element in elements:
        record = {
            name: coerce_field(_read_field(element, selector), schema.get(name))
            for name, selector in fields.items()
        }
        if any(value not in (None, "") for value in record.values()):
            records.append(record)
    return records


class PlaywrightPageAgent:
    """Page agent backed by a headless Chromium instance.

    The browser is launched lazily on the first :meth:`open` and shared by
    every handle; each handle gets its own context so cookies and headers do
    not leak between sites. Call :meth:`aclose` when done.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        timeout: int = DEFAULT_NAVIGATION_TIMEOUT,
        user_agent: str | None = None,
    ) -> None:
        self.headless = headless
        self.timeout = timeout
        self.user_agent = user_agent
        self._playwright: "Playwright | None" = None
        self._browser: "Browser | None" = None

    async def _ensure_browser(self) -> "Browser":
        if self._browser is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--disable-dev-shm-usage", "--no-sandbox"],
            )
        return self._browser

    async def open(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        cookies: Mapping[str, str] | None = None,
    ) -> PageHandle:
        browser = await self._ensure_browser()
        context_options: dict[str, Any] = {}
        if self.user_agent:
            context_options["user_agent"] = self.user_agent
        if headers:
            context_options["extra_http_headers"] = dict(headers)

        context = await browser.new_context(**context_options)
        try:
            if cookies:
                await context.add_cookies(
                    [{"name": name, "value": value, "url": url} for name, value in cookies.items()]
                )
            page = await context.new_page()
            page.set_default_timeout(self.timeout)
            await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout)
        except PlaywrightError as exc:
            await context.close()
            raise PageAgentError(f"Failed to open {url}: {exc}") from exc

        logger.debug("Opened %s", url)
        return PageHandle.create(url, page=page, context=context)

    async def await_load(self, handle: PageHandle) -> None:
        try:
            await handle.page.wait_for_load_state("load", timeout=self.timeout)
        except PlaywrightError as exc:
            raise PageAgentError(f"Page {handle.url} did not finish loading: {exc}") from exc

    async def extract(
        self,
        handle: PageHandle,
        selectors: Mapping[str, Any],
        schema: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        try:
            html = await handle.page.content()
        except PlaywrightError as exc:
            raise PageAgentError(f"Could not read {handle.url}: {exc}") from exc
        return extract_records(html, selectors, schema)

    async def paginate_next(self, handle: PageHandle, config: "PaginationConfig") -> bool:
        page = handle.page
        if config.next_selector:
            locator = page.locator(config.next_selector).first
        else:
            locator = page.locator("a, button", has_text=config.next_text).first

        try:
            if await locator.count() == 0:
                return False
            await locator.click()
            await page.wait_for_load_state("load", timeout=self.timeout)
        except PlaywrightError as exc:
            raise PageAgentError(f"Pagination failed on {handle.url}: {exc}") from exc
        return True

    async def click(self, handle: PageHandle, selector: str, wait_ms: int = 1000) -> None:
        try:
            await handle.page.click(selector)
            await handle.page.wait_for_timeout(wait_ms)
        except PlaywrightError as exc:
            raise PageAgentError(f"Click on '{selector}' failed: {exc}") from exc

    async def fill_form(
        self,
        handle: PageHandle,
        fields: Mapping[str, Any],
        submit: bool | str = False,
    ) -> None:
        page = handle.page
        try:
            last_selector = None
            for selector, value in fields.items():
                await page.fill(selector, str(value))
                last_selector = selector
            if isinstance(submit, str) and submit:
                await page.click(submit)
            elif submit and last_selector:
                await page.press(last_selector, "Enter")
        except PlaywrightError as exc:
            raise PageAgentError(f"Form fill on {handle.url} failed: {exc}") from exc

    async def screenshot(self, handle: PageHandle) -> bytes:
        try:
            return await handle.page.screenshot(full_page=True)
        except PlaywrightError as exc:
            raise PageAgentError(f"Screenshot of {handle.url} failed: {exc}") from exc

    async def run_script(self, handle: PageHandle, code: str) -> Any:
        try:
            return await handle.page.evaluate(code)
        except PlaywrightError as exc:
            raise PageAgentError(f"Script failed on {handle.url}: {exc}") from exc

    async def get_content(self, handle: PageHandle) -> dict[str, str]:
        page = handle.page
        try:
            title = await page.title()
            html = await page.content()
            text = trafilatura.extract(html) or await page.inner_text("body")
        except PlaywrightError as exc:
            raise PageAgentError(f"Could not read content of {handle.url}: {exc}") from exc
        return {"title": title, "text": text}

    async def close(self, handle: PageHandle) -> None:
        if handle.context is None:
            return
        try:
            await handle.context.close()
        except PlaywrightError as exc:
            raise PageAgentError(f"Closing {handle.url} failed: {exc}") from exc
        finally:
            handle.context = None
            handle.page = None

    async def aclose(self) -> None:
        """Shut down the shared browser."""
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
