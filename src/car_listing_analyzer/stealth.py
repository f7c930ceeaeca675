"""Playwright stealth patches for classifieds sites behind bot detection.

Otomoto and OLX sit behind bot-detection services that check browser
fingerprints (``navigator.webdriver``, missing plugins, WebGL renderer
strings).  The ``playwright-stealth`` library patches those vectors.

Two entry points share one :class:`Stealth` instance:

* :func:`apply_stealth` is a scrapy-playwright
  ``playwright_page_init_callback`` used by the listings spider;
* :func:`stealth_page` patches a page opened directly with Playwright
  (see :mod:`car_listing_analyzer.scraper`).
"""

from __future__ import annotations

from playwright_stealth import Stealth

_stealth = Stealth()


async def stealth_page(page):
    await _stealth.apply_stealth_async(page)


async def apply_stealth(page, request):
    """scrapy-playwright page-init callback that applies stealth patches."""
    await stealth_page(page)
