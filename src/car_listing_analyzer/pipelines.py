"""Item pipelines for car-listing-analyzer.

Order (see ``ITEM_PIPELINES`` in settings):

1. :class:`DuplicateFilterPipeline` drops listings already stored.
2. :class:`CompleteRecordPipeline` turns a parsed (partial) record into a
   complete one: id, source, defaults, empty AI fields.
3. :class:`RepositoryPipeline` inserts the record.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from urllib.parse import urlparse

from scrapy.exceptions import DropItem

from car_listing_analyzer.errors import DuplicateVehicleError
from car_listing_analyzer.items import AI_FIELDS, SELLER_FIELDS, VehicleSource, VehicleStatus
from car_listing_analyzer.parsing_helpers import convert_currency, listing_id_from_url
from car_listing_analyzer.repository import VehicleRepository


class _RepositoryMixin:
    """Open a :class:`VehicleRepository` for the duration of a crawl."""

    def __init__(self, database_path: str = "vehicles.db", repository: VehicleRepository | None = None):
        self.database_path = database_path
        self.repository = repository
        self._owns_repository = repository is None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_crawler(cls, crawler):
        return cls(database_path=crawler.settings.get("DATABASE_PATH", "vehicles.db"))

    def open_spider(self, spider):
        if self.repository is None:
            self.repository = VehicleRepository(self.database_path)

    def close_spider(self, spider):
        if self._owns_repository and self.repository is not None:
            self.repository.close()
            self.repository = None


class DuplicateFilterPipeline(_RepositoryMixin):
    """Drop items whose ``source_url`` is already stored."""

    def process_item(self, item, spider):
        url = item.get("source_url")
        if not url:
            raise DropItem("Listing without source_url")
        if self.repository.find_vehicle_by_url(url) is not None:
            raise DropItem(f"Already stored: {url}")
        return item


class CompleteRecordPipeline:
    """Fill everything a stored record needs that parsing does not produce."""

    def __init__(self, pln_to_eur_rate: float = 0.23):
        self.pln_to_eur_rate = pln_to_eur_rate

    @classmethod
    def from_crawler(cls, crawler):
        return cls(pln_to_eur_rate=crawler.settings.getfloat("PLN_TO_EUR_RATE", 0.23))

    @staticmethod
    def source_id_from_url(url: str) -> str:
        """``.../oferta/renault-trafic-ID6Gx1k2.html`` → ``6Gx1k2``; else the last path segment."""
        return listing_id_from_url(url) or urlparse(url).path.rstrip("/").rsplit("/", 1)[-1] or url

    def process_item(self, item, spider):
        now = datetime.now(timezone.utc)
        url = item["source_url"]

        item["id"] = item.get("id") or str(uuid.uuid4())
        source = item.get("source") or getattr(spider, "site", None)
        try:
            item["source"] = VehicleSource(source).value
        except ValueError:
            raise DropItem(f"Unsupported listing source: {source!r}")
        item["source_id"] = item.get("source_id") or self.source_id_from_url(url)
        item["source_created_at"] = item.get("source_created_at") or now

        item["source_title"] = item.get("source_title") or ""
        item["source_description_html"] = item.get("source_description_html") or ""
        item["source_parameters"] = item.get("source_parameters") or {}
        item["source_equipment"] = item.get("source_equipment") or {}
        item["source_photos"] = item.get("source_photos") or []

        item["title"] = item.get("title") or item["source_title"] or "Unknown Vehicle"
        item["description"] = item.get("description")
        item["features"] = item.get("features") or []
        item["price_pln"] = item.get("price_pln") or 0
        if item.get("price_eur") is None:
            item["price_eur"] = convert_currency(item["price_pln"], self.pln_to_eur_rate, 0)
        item["year"] = item.get("year") or 0
        item["mileage"] = item.get("mileage") or 0
        item["seller_info"] = item.get("seller_info") or {key: None for key in SELLER_FIELDS.values()}
        item["photos"] = item.get("photos") or list(item["source_photos"])

        for field in AI_FIELDS:
            item[field] = None

        item["status"] = item.get("status") or VehicleStatus.NEW.value
        item["personal_notes"] = item.get("personal_notes")
        item["scraped_at"] = item.get("scraped_at") or now
        item["created_at"] = item.get("created_at") or now
        item["updated_at"] = now
        return item


class RepositoryPipeline(_RepositoryMixin):
    """Insert completed records; duplicates are counted, not fatal."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.inserted = 0
        self.duplicates = 0

    def process_item(self, item, spider):
        try:
            self.repository.insert_vehicle(item)
        except DuplicateVehicleError:
            self.duplicates += 1
            self.logger.info("Duplicate listing skipped: %s", item.get("source_url"))
        else:
            self.inserted += 1
        return item

    def close_spider(self, spider):
        self.logger.info(
            "Spider '%s' finished: %d vehicle(s) stored, %d duplicate(s) skipped.",
            spider.name, self.inserted, self.duplicates,
        )
        super().close_spider(spider)
