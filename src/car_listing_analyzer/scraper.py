"""Fetch the fully-rendered HTML of a single listing page with Playwright.

Used for one-off fetches (the ``fetch`` and ``parse --url`` commands);
crawls go through scrapy-playwright instead.

Usage from Python::

    import asyncio
    from car_listing_analyzer.scraper import scrape_url

    result = asyncio.run(scrape_url("https://www.otomoto.pl/osobowe/oferta/..."))
    print(result.status_code, len(result.html))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from car_listing_analyzer.stealth import stealth_page

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)


@dataclass
class ScrapeResult:
    html: str
    final_url: str
    status_code: int | None
    scraping_time: float  # seconds


async def scrape_url(
    url: str,
    *,
    wait_until: str = "domcontentloaded",
    timeout: int = 30_000,
    headless: bool = True,
    wait_for_selector: str | None = None,
    extra_wait_ms: int = 2_000,
) -> ScrapeResult:
    """Launch a browser, navigate to *url*, and return the rendered page.

    Parameters
    ----------
    url:
        The URL to fetch.
    wait_until:
        Playwright *wait_until* event (``"domcontentloaded"``,
        ``"load"``, ``"networkidle"``).
    timeout:
        Navigation timeout in milliseconds.
    headless:
        Whether to run the browser headlessly.
    wait_for_selector:
        Optional CSS selector to wait for before capturing HTML.
    extra_wait_ms:
        Extra time (ms) to wait after the page / selector is ready.
    """
    from playwright.async_api import async_playwright

    started = time.monotonic()
    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=headless)
        context = await browser.new_context(
            viewport={"width": 1920, "height": 1080},
            ignore_https_errors=True,
            user_agent=USER_AGENT,
            locale="pl-PL",
        )
        page = await context.new_page()
        await stealth_page(page)

        try:
            response = await page.goto(url, wait_until=wait_until, timeout=timeout)

            if wait_for_selector:
                await page.wait_for_selector(wait_for_selector, timeout=timeout)

            if extra_wait_ms:
                await page.wait_for_timeout(extra_wait_ms)

            html = await page.content()
            final_url = page.url
        finally:
            await context.close()
            await browser.close()

    elapsed = time.monotonic() - started
    status = response.status if response is not None else None
    logger.info("Fetched %s (HTTP %s, %d bytes) in %.1fs", final_url, status, len(html), elapsed)
    return ScrapeResult(html=html, final_url=final_url, status_code=status, scraping_time=elapsed)
