"""Spider for schema-driven classifieds sites (Otomoto, OLX, ...).

The spider itself knows nothing about any site's markup: every page goes
through :class:`~car_listing_analyzer.parser.SchemaParser` with the site
key given on the command line.  Search pages yield either stubs (each
followed to its detail page) or complete records (yielded directly);
pagination appends ``page=N`` to the start URL until a page comes back
empty, ``max_pages`` is reached, or most of a page is already stored
(a recrawl has caught up with the previous one).

Example usage::

    car-listing-analyzer crawl otomoto \
        --url "https://www.otomoto.pl/osobowe/renault/trafic" --max-pages 3
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import scrapy
from scrapy.http import HtmlResponse

from car_listing_analyzer.errors import ExtractionError, PageTypeError
from car_listing_analyzer.items import VehicleItem
from car_listing_analyzer.parser import SchemaParser
from car_listing_analyzer.parsing_helpers import normalize_date
from car_listing_analyzer.repository import VehicleRepository
from car_listing_analyzer.spiders import log_request_failure
from car_listing_analyzer.stealth import apply_stealth


# Stop paginating once this share of a page's first listings is stored.
STORED_SAMPLE_SIZE = 5
STORED_RATIO_THRESHOLD = 0.8


class ListingSpider(scrapy.Spider):
    """Crawl search results of a classifieds site described in the parser schema."""

    name = "listings"
    use_playwright = True

    # Passed via ``-a site=… -a url=…`` or the CLI wrapper.
    def __init__(
        self,
        site: str | None = None,
        url: str | None = None,
        max_pages: int | str | None = None,
        parser: SchemaParser | None = None,
        repository: VehicleRepository | None = None,
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        if site is None or url is None:
            raise ValueError(
                "A site key and a starting URL are required. "
                "Pass them with: -a site=otomoto -a url=https://www.otomoto.pl/osobowe/..."
            )
        self.site = site
        self.start_url = url
        self.max_pages = int(max_pages) if max_pages else None
        self.parser = parser
        self.repository = repository
        self._owns_repository = False
        self._domain = urlparse(url).netloc

    @classmethod
    def from_crawler(cls, crawler, *args, **kwargs):
        spider = super().from_crawler(crawler, *args, **kwargs)
        if spider.parser is None:
            spider.parser = SchemaParser(
                crawler.settings.get("PARSER_SCHEMA_PATH"),
                crawler.settings.getfloat("PLN_TO_EUR_RATE", 0.23),
            )
        spider.use_playwright = crawler.settings.getbool("LISTINGS_USE_PLAYWRIGHT", True)
        if spider.repository is None and crawler.settings.getbool("LISTINGS_SMART_PAGINATION", True):
            spider.repository = VehicleRepository(crawler.settings.get("DATABASE_PATH", "vehicles.db"))
            spider._owns_repository = True
        return spider

    def closed(self, reason):
        if self._owns_repository and self.repository is not None:
            self.repository.close()
            self.repository = None

    def _is_stored(self, url: str) -> bool:
        return self.repository is not None and self.repository.find_vehicle_by_url(url) is not None

    def _mostly_stored(self, urls: list[str]) -> bool:
        sample = urls[:STORED_SAMPLE_SIZE]
        if self.repository is None or not sample:
            return False
        stored = sum(1 for url in sample if self._is_stored(url))
        return stored / len(sample) >= STORED_RATIO_THRESHOLD

    def _request(self, url: str, callback, **meta) -> scrapy.Request:
        if self.use_playwright:
            meta.update(playwright=True, playwright_page_init_callback=apply_stealth)
        return scrapy.Request(url, callback=callback, errback=self.errback, meta=meta)

    # ------------------------------------------------------------------
    # Search results page
    # ------------------------------------------------------------------

    async def start(self):
        yield self._request(self.start_url, self.parse_search, page=1)

    def parse_search(self, response: HtmlResponse):
        page = response.meta.get("page", 1)
        try:
            result = self.parser.parse_html(response.text, self.site, expected_page_type="search")
        except (ExtractionError, PageTypeError) as exc:
            self.logger.error("[%s] Skipping search page %s: %s", self._domain, response.url, exc)
            return

        self.logger.info(
            "[%s] Found %d listings on page %d (%s)",
            self._domain, len(result.data), page, response.url,
        )

        page_urls = []
        for entry in result.data:
            if isinstance(entry, VehicleItem):
                if entry.get("source_url"):
                    page_urls.append(entry["source_url"])
                yield entry
                continue
            if not entry.get("source_url"):
                self.logger.warning("[%s] Search result without URL: %r", self._domain, dict(entry))
                continue
            url = response.urljoin(entry["source_url"])
            page_urls.append(url)
            if self._is_stored(url):
                self.logger.debug("[%s] Already stored, not fetching: %s", self._domain, url)
                continue
            yield self._request(url, self.parse_detail, stub=dict(entry))

        if not result.data:
            self.logger.info("[%s] Empty page %d, stopping pagination", self._domain, page)
            return
        if self._mostly_stored(page_urls):
            self.logger.info(
                "[%s] Most listings on page %d are already stored, stopping pagination",
                self._domain, page,
            )
            return
        if self.max_pages and page >= self.max_pages:
            self.logger.info("[%s] Reached max_pages=%d", self._domain, self.max_pages)
            return
        yield self._request(build_page_url(self.start_url, page + 1), self.parse_search, page=page + 1)

    # ------------------------------------------------------------------
    # Listing detail page
    # ------------------------------------------------------------------

    def parse_detail(self, response: HtmlResponse):
        stub = response.meta.get("stub") or {}
        try:
            result = self.parser.parse_html(response.text, self.site, expected_page_type="detail")
        except (ExtractionError, PageTypeError) as exc:
            self.logger.error("[%s] Skipping detail page %s: %s", self._domain, response.url, exc)
            return

        item = result.data
        item["source_url"] = item.get("source_url") or stub.get("source_url") or response.url
        if not item.get("source_id") and stub.get("source_id"):
            item["source_id"] = stub["source_id"]
        if not item.get("source_title") and stub.get("source_title"):
            item["source_title"] = stub["source_title"]
            item["title"] = stub["source_title"]
        if not item.get("source_created_at") and stub.get("source_created_at"):
            item["source_created_at"] = normalize_date(stub["source_created_at"])
        yield item

    def errback(self, failure):
        log_request_failure(failure, self._domain, self.logger)


def build_page_url(base_url: str, page: int) -> str:
    """Return *base_url* with the ``page`` query parameter set to *page*."""
    parsed = urlparse(base_url)
    qs = parse_qs(parsed.query)
    qs["page"] = [str(page)]
    return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
