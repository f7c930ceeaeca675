"""Schema-driven extraction of listing data from raw page HTML.

:class:`SchemaParser` looks up a site in the parser schema and dispatches
to one of two strategies sharing the same output contract:

* :class:`JsonExtraction` reads a structured payload embedded in the page
  (a ``<script>`` tag such as ``#__NEXT_DATA__``, or an inline JS state
  variable such as ``window.__PRERENDERED_STATE__``), detects the page
  type from it and walks the configured path expressions.
* :class:`CssExtraction` walks CSS selectors over the DOM using scrapy's
  :class:`~scrapy.Selector`.

Search pages produce a list of :class:`SearchResultItem` stubs, or of
complete :class:`VehicleItem` records when the page config sets
``fullRecords``.  Detail pages produce one :class:`VehicleItem`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urljoin

from scrapy import Selector

from car_listing_analyzer.errors import ExtractionError, PageTypeMismatchError, UnknownPageTypeError
from car_listing_analyzer.items import SELLER_FIELDS, SearchResultItem, VehicleItem
from car_listing_analyzer.parsing_helpers import (
    equipment_to_dict,
    finalize_record,
    listing_id_from_url,
    normalize_date,
    normalize_mileage,
    normalize_text,
    normalize_year,
    parameters_to_dict,
    photo_urls,
)
from car_listing_analyzer.path_resolver import resolve
from car_listing_analyzer.schema import (
    AutoDetection,
    PageConfig,
    PageType,
    ParseMethod,
    SiteConfig,
    load_parser_schema,
)

logger = logging.getLogger(__name__)

# Secondary lookup for the seller's registration date when the page maps
# ``member_since`` to a path that does not resolve.
_MEMBER_SINCE_FALLBACK = "seller.featuresBadges[code=registration-date].label"


@dataclass
class ParseResult:
    page_type: str
    data: VehicleItem | list


# ---------------------------------------------------------------------------
# Payload extraction
# ---------------------------------------------------------------------------

def extract_script_payload(html: str, script_selector: str):
    """Return the parsed JSON content of the script tag matched by *script_selector*."""
    content = Selector(text=html).css(f"{script_selector}::text").get()
    if not content or not content.strip():
        raise ExtractionError(f"Script tag not found: {script_selector}")
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Failed to parse JSON from script tag {script_selector}: {exc}") from exc


def extract_state_variable(html: str, variable: str):
    """Return the JSON value assigned to the inline JS *variable*.

    Handles both ``window.X = {...};`` and the string-encoded form
    ``window.X = "{\\"ads\\":...}";`` (decoded, then parsed again).
    """
    m = re.search(re.escape(variable) + r"\s*=\s*", html)
    if not m:
        raise ExtractionError(f"State variable {variable} not found in page")

    decoder = json.JSONDecoder()
    try:
        value, _ = decoder.raw_decode(html, m.end())
        if isinstance(value, str):
            value = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Failed to parse {variable}: {exc}") from exc
    return value


def detect_page_type(payload, detection: AutoDetection) -> str:
    """Classify a JSON payload as a search or detail page (detail wins)."""
    if detection.detail_indicator and resolve(payload, detection.detail_indicator):
        return PageType.DETAIL.value
    if detection.search_indicator and resolve(payload, detection.search_indicator):
        return PageType.SEARCH.value
    raise UnknownPageTypeError("Unknown page type - neither search nor detail indicators found")


# ---------------------------------------------------------------------------
# Field conversion shared by rich search records and detail records
# ---------------------------------------------------------------------------

def _lift_parameters(params: dict[str, str], page: PageConfig, item: VehicleItem) -> None:
    """Copy mapped parameter values into dedicated record fields."""
    mapping = page.parameter_mapping
    year = params.get(mapping.get("year", ""))
    if year is not None and not item.get("year"):
        item["year"] = normalize_year(year)
    mileage = params.get(mapping.get("mileage", ""))
    if mileage is not None and not item.get("mileage"):
        item["mileage"] = normalize_mileage(mileage)
    fuel_type = params.get(mapping.get("fuel_type", ""))
    if fuel_type is not None:
        params["fuelType"] = fuel_type
    transmission = params.get(mapping.get("transmission", ""))
    if transmission is not None:
        params["transmission"] = transmission


def _convert_field(field_name: str, value, page: PageConfig, item: VehicleItem):
    if field_name == "source_parameters":
        if isinstance(value, list):
            params = parameters_to_dict(value)
        elif isinstance(value, dict):
            params = {str(k): str(v) for k, v in value.items()}
        else:
            return None
        _lift_parameters(params, page, item)
        return params
    if field_name == "source_equipment":
        return equipment_to_dict(value) if isinstance(value, list) else value
    if field_name == "source_photos":
        return photo_urls(value) if isinstance(value, list) else value
    if field_name == "year":
        return normalize_year(value)
    if field_name == "mileage":
        return normalize_mileage(value)
    if field_name in page.rich_text_fields and isinstance(value, str):
        return normalize_text(value)
    return value


def _seller_info(seller: dict) -> dict:
    return {key: seller.get(key) or None for key in SELLER_FIELDS.values()}


def build_record(source: dict, page: PageConfig) -> VehicleItem:
    """Map one source object through the page's field map into a raw record."""
    item = VehicleItem()
    seller: dict = {}

    for field_name, path in page.fields.items():
        try:
            value = resolve(source, path)
            if field_name == "member_since" and value is None:
                value = resolve(source, _MEMBER_SINCE_FALLBACK)

            if field_name in SELLER_FIELDS:
                seller[SELLER_FIELDS[field_name]] = value
                continue
            if value is None:
                continue

            converted = _convert_field(field_name, value, page, item)
            if converted is not None:
                item[field_name] = converted
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Failed to extract field %s from %s: %s", field_name, path, exc)

    if seller:
        item["seller_info"] = _seller_info(seller)
    return item


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class JsonExtraction:
    """Extract records from a page's embedded JSON payload."""

    def __init__(self, pln_to_eur_rate: float):
        self.pln_to_eur_rate = pln_to_eur_rate

    def parse(self, html: str, site: SiteConfig, expected_page_type: str | None = None) -> ParseResult:
        if site.state_variable:
            payload = extract_state_variable(html, site.state_variable)
        else:
            payload = extract_script_payload(html, site.script_selector)

        page_type = detect_page_type(payload, site.auto_detection)
        if expected_page_type and page_type != expected_page_type:
            raise PageTypeMismatchError(expected_page_type, page_type)

        page = site.page(page_type)
        if page_type == PageType.DETAIL.value:
            return ParseResult(page_type, self._detail(payload, page))
        if page.full_records:
            return ParseResult(page_type, self._search_records(payload, page, site))
        return ParseResult(page_type, self._search_stubs(payload, page))

    # -- search -----------------------------------------------------------

    def _result_list(self, payload, page: PageConfig) -> list:
        base = resolve(payload, page.base_path)
        if base is None:
            raise ExtractionError(f"Base path not found: {page.base_path}")

        if page.data_path:
            # Cache objects are keyed by a per-request query hash, so scan
            # every entry and take the first one holding a non-empty list.
            if not isinstance(base, dict):
                raise ExtractionError(f"Expected an object at {page.base_path}")
            results = None
            for key, entry in base.items():
                raw = entry.get(page.data_path) if isinstance(entry, dict) else None
                if not raw:
                    continue
                try:
                    data = json.loads(raw) if isinstance(raw, str) else raw
                except json.JSONDecodeError:
                    logger.debug("Skipping cache entry %s: %s is not JSON", key, page.data_path)
                    continue
                candidate = resolve(data, page.list_path)
                if candidate:
                    logger.debug("Using cache entry %s for search results", key)
                    results = candidate
                    break
            if results is None:
                raise ExtractionError(f"Search data not found under {page.base_path}")
        elif page.list_path:
            results = resolve(base, page.list_path)
        else:
            results = base

        if not isinstance(results, list):
            raise ExtractionError(f"Results list not found or invalid at {page.list_path or page.base_path}")
        return results

    def _search_stubs(self, payload, page: PageConfig) -> list[SearchResultItem]:
        stubs = []
        for element in self._result_list(payload, page):
            stub = SearchResultItem(source_id="", source_url="", source_title="", source_created_at="")
            for field_name, path in page.fields.items():
                value = resolve(element, path)
                if value is not None:
                    stub[field_name] = str(value)
            stubs.append(stub)
        return stubs

    def _search_records(self, payload, page: PageConfig, site: SiteConfig) -> list[VehicleItem]:
        records = []
        for element in self._result_list(payload, page):
            if not isinstance(element, dict):
                continue
            item = build_record(element, page)
            if site.base_url and item.get("source_url"):
                item["source_url"] = urljoin(site.base_url, item["source_url"])
            # Search-page records round the converted price to whole units.
            records.append(finalize_record(item, self.pln_to_eur_rate, eur_ndigits=0))
        return records

    # -- detail -----------------------------------------------------------

    def _detail(self, payload, page: PageConfig) -> VehicleItem:
        advert = resolve(payload, page.base_path)
        if not advert or not isinstance(advert, dict):
            raise ExtractionError(f"Advert data not found at: {page.base_path}")
        return finalize_record(build_record(advert, page), self.pln_to_eur_rate)


class CssExtraction:
    """Extract records by walking CSS selectors over the page DOM."""

    def __init__(self, pln_to_eur_rate: float):
        self.pln_to_eur_rate = pln_to_eur_rate

    def parse(self, html: str, site: SiteConfig, expected_page_type: str | None = None) -> ParseResult:
        sel = Selector(text=html)
        page_type = expected_page_type or self.detect_page_type(sel, site)
        page = site.page(page_type)
        if page_type == PageType.SEARCH.value:
            return ParseResult(page_type, self._search(sel, page, site))
        return ParseResult(page_type, self._detail(sel, page))

    @staticmethod
    def detect_page_type(sel: Selector, site: SiteConfig) -> str:
        """Use the auto-detection indicators as CSS selectors; default to detail."""
        detection = site.auto_detection
        if detection is not None:
            if detection.detail_indicator and sel.css(detection.detail_indicator):
                return PageType.DETAIL.value
            if detection.search_indicator and sel.css(detection.search_indicator):
                return PageType.SEARCH.value
        return PageType.DETAIL.value

    @staticmethod
    def _text(nodes) -> str:
        return "".join(node.xpath("string()").get("") for node in nodes).strip()

    # -- search -----------------------------------------------------------

    def _search(self, sel: Selector, page: PageConfig, site: SiteConfig) -> list[SearchResultItem]:
        selectors = page.selectors
        now = datetime.now(timezone.utc)
        results = []

        for node in sel.css(selectors["list_items"]):
            try:
                url = ""
                if "source_url" in selectors:
                    links = node.css(selectors["source_url"])
                    url = (links.attrib.get("href") or "") if links else ""
                if url and site.base_url:
                    url = urljoin(site.base_url, url)

                title = ""
                if "source_title" in selectors:
                    title = self._text(node.css(selectors["source_title"])[:1])

                source_id = ""
                if "source_id" in selectors:
                    id_nodes = node.css(selectors["source_id"])
                    if id_nodes:
                        source_id = id_nodes.attrib.get("id") or self._text(id_nodes[:1])
                    source_id = source_id or node.attrib.get("id", "")
                if not source_id and url:
                    source_id = listing_id_from_url(url) or ""

                if not url and not title:
                    continue

                created_at = now
                if "source_created_at" in selectors:
                    created_text = self._text(node.css(selectors["source_created_at"])[:1])
                    created_at = normalize_date(created_text, now=now)

                results.append(SearchResultItem(
                    source_id=source_id or url,
                    source_url=url,
                    source_title=title,
                    source_created_at=created_at.isoformat(),
                ))
            except Exception as exc:
                logger.warning("Failed to parse search result item: %s", exc)

        return results

    # -- detail -----------------------------------------------------------

    def _detail(self, sel: Selector, page: PageConfig) -> VehicleItem:
        item = VehicleItem()
        seller: dict = {}

        for field_name, css in page.selectors.items():
            try:
                nodes = sel.css(css)
                if not nodes:
                    continue

                if field_name == "source_photos":
                    photos = [n.attrib.get("src") or n.attrib.get("data-src") for n in nodes]
                    item[field_name] = [p for p in photos if p]
                    continue

                value = self._text(nodes)
                if not value:
                    value = nodes.attrib.get("href") or nodes.attrib.get("content") or ""

                if field_name in SELLER_FIELDS:
                    seller[SELLER_FIELDS[field_name]] = value
                elif field_name == "source_created_at":
                    item[field_name] = normalize_date(value) if value else None
                elif field_name == "year":
                    item[field_name] = normalize_year(value)
                elif field_name == "mileage":
                    item[field_name] = normalize_mileage(value)
                elif field_name in page.rich_text_fields:
                    item[field_name] = normalize_text(value)
                else:
                    item[field_name] = value
            except Exception as exc:
                logger.warning("Failed to extract field %s with selector %s: %s", field_name, css, exc)

        if seller:
            item["seller_info"] = _seller_info(seller)
        return finalize_record(item, self.pln_to_eur_rate)


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------

class SchemaParser:
    """Parse raw page HTML into listing records according to a parser schema.

    The schema is loaded once at construction; call :meth:`reload_schema`
    to pick up edits.  Instances are not safe to reload while a parse is
    in flight.
    """

    def __init__(self, schema_path: str | Path, pln_to_eur_rate: float = 0.23):
        self.schema_path = Path(schema_path)
        self.pln_to_eur_rate = pln_to_eur_rate
        self.schema = load_parser_schema(self.schema_path)
        self._strategies = {
            ParseMethod.JSON: JsonExtraction(pln_to_eur_rate),
            ParseMethod.CSS: CssExtraction(pln_to_eur_rate),
        }

    def reload_schema(self) -> None:
        self.schema = load_parser_schema(self.schema_path)

    @property
    def site_keys(self) -> list[str]:
        return sorted(self.schema.sites)

    def parse_html(
        self,
        html: str,
        site_key: str,
        expected_page_type: str | PageType | None = None,
    ) -> ParseResult:
        """Detect the page type of *html* and extract its records.

        Raises
        ------
        ConfigError
            *site_key* is not in the schema, or the detected page type has
            no configuration.
        ExtractionError
            The structured-data payload is missing or unparseable.
        PageTypeError
            The page type is unknown, or differs from *expected_page_type*.
        """
        site = self.schema.site(site_key)
        expected = PageType(expected_page_type).value if expected_page_type else None
        return self._strategies[site.method].parse(html, site, expected)
