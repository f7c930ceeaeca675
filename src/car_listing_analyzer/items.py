"""Scrapy items for vehicle listing data."""

from __future__ import annotations

from enum import Enum

import scrapy


class VehicleSource(str, Enum):
    """Classifieds sites a listing can come from."""

    OTOMOTO = "otomoto"
    OLX = "olx"


SOURCES = tuple(source.value for source in VehicleSource)


class VehicleStatus(str, Enum):
    """Review workflow state of a stored listing."""

    NEW = "new"
    TO_CONTACT = "to_contact"
    CONTACTED = "contacted"
    TO_VISIT = "to_visit"
    VISITED = "visited"
    NOT_INTERESTED = "not_interested"
    DELETED = "deleted"


class SearchResultItem(scrapy.Item):
    """Pointer to a listing found on a search page (all values are strings)."""

    source_id = scrapy.Field()
    source_url = scrapy.Field()
    source_title = scrapy.Field()
    source_created_at = scrapy.Field()


class VehicleItem(scrapy.Item):
    """A single vehicle listing, partial after parsing, complete once stored."""

    # Identity
    id = scrapy.Field()
    source = scrapy.Field()
    source_id = scrapy.Field()
    source_url = scrapy.Field()             # deduplication key
    source_created_at = scrapy.Field()

    # Raw provenance
    source_title = scrapy.Field()
    source_description_html = scrapy.Field()
    source_parameters = scrapy.Field()      # {label: value} from the parameter table
    source_equipment = scrapy.Field()       # {category: [feature, ...]}
    source_photos = scrapy.Field()

    # Processed
    title = scrapy.Field()
    description = scrapy.Field()            # None until translated
    features = scrapy.Field()
    price_pln = scrapy.Field()
    price_eur = scrapy.Field()
    year = scrapy.Field()
    mileage = scrapy.Field()
    seller_info = scrapy.Field()            # {name, id, type, location, member_since}
    photos = scrapy.Field()

    # AI enrichment (None until produced)
    personal_fit_score = scrapy.Field()
    market_value_score = scrapy.Field()     # "-7%", "+12%" or "market_avg"
    ai_priority_rating = scrapy.Field()
    ai_priority_summary = scrapy.Field()
    ai_mechanic_report = scrapy.Field()
    ai_data_sanity_check = scrapy.Field()

    # Workflow
    status = scrapy.Field()
    personal_notes = scrapy.Field()

    # Timestamps
    scraped_at = scrapy.Field()
    created_at = scrapy.Field()
    updated_at = scrapy.Field()


# Seller fields a page schema may map individually; the parser folds them
# into ``seller_info``.
SELLER_FIELDS: dict[str, str] = {
    "seller_name": "name",
    "seller_id": "id",
    "seller_type": "type",
    "seller_location": "location",
    "member_since": "member_since",
}

AI_FIELDS = (
    "personal_fit_score",
    "market_value_score",
    "ai_priority_rating",
    "ai_priority_summary",
    "ai_mechanic_report",
    "ai_data_sanity_check",
)
