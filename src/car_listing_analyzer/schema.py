"""Loading and validation of the declarative parser schema.

The schema is a JSON file of the form::

    {
      "sites": {
        "otomoto": {
          "method": "json",
          "scriptSelector": "script#__NEXT_DATA__",
          "autoDetection": {
            "searchPageIndicator": "props.pageProps.urqlState",
            "detailPageIndicator": "props.pageProps.advert"
          },
          "pageTypes": {
            "search": {"basePath": "...", "dataPath": "data",
                       "listPath": "advertSearch.edges", "fields": {...}},
            "detail": {"basePath": "props.pageProps.advert", "fields": {...}}
          }
        }
      }
    }

Keys of ``fields`` / ``selectors`` are canonical (snake_case) record field
names; values are path expressions (json) or CSS selectors (css).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from car_listing_analyzer.errors import ConfigError
from car_listing_analyzer.items import SELLER_FIELDS, SearchResultItem, VehicleItem
from car_listing_analyzer.path_resolver import parse_path

logger = logging.getLogger(__name__)


class ParseMethod(str, Enum):
    JSON = "json"
    CSS = "css"


class PageType(str, Enum):
    SEARCH = "search"
    DETAIL = "detail"


DEFAULT_SCRIPT_SELECTOR = "script#__NEXT_DATA__"

# Parameter names lifted into dedicated fields when a page maps a raw
# parameters array.  Rows are keyed by ``label`` when they have one (see
# ``parameters_to_dict``), so the defaults are Otomoto's labels.
DEFAULT_PARAMETER_MAPPING: dict[str, str] = {
    "year": "Rok produkcji",
    "mileage": "Przebieg",
    "fuel_type": "Rodzaj paliwa",
    "transmission": "Skrzynia biegów",
}

_STUB_FIELDS = frozenset(SearchResultItem.fields)
_RECORD_FIELDS = frozenset(VehicleItem.fields) | frozenset(SELLER_FIELDS)
_CSS_SEARCH_SELECTORS = _STUB_FIELDS | {"list_items"}


@dataclass(frozen=True)
class AutoDetection:
    search_indicator: str | None
    detail_indicator: str | None


@dataclass(frozen=True)
class PageConfig:
    base_path: str | None = None
    data_path: str | None = None
    list_path: str | None = None
    fields: dict[str, str] = field(default_factory=dict)
    selectors: dict[str, str] = field(default_factory=dict)
    full_records: bool = False
    parameter_mapping: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PARAMETER_MAPPING))
    rich_text_fields: tuple[str, ...] = ("source_title",)


@dataclass(frozen=True)
class SiteConfig:
    key: str
    method: ParseMethod
    page_types: dict[str, PageConfig]
    auto_detection: AutoDetection | None = None
    script_selector: str | None = None
    state_variable: str | None = None
    base_url: str | None = None

    def page(self, page_type: str) -> PageConfig:
        try:
            return self.page_types[page_type]
        except KeyError:
            raise ConfigError(
                f"No configuration found for page type: {page_type} (site {self.key})"
            ) from None


@dataclass(frozen=True)
class ParserSchema:
    sites: dict[str, SiteConfig]

    def site(self, site_key: str) -> SiteConfig:
        try:
            return self.sites[site_key]
        except KeyError:
            raise ConfigError(f"No configuration found for site: {site_key}") from None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_path(site_key: str, label: str, path) -> str:
    if not isinstance(path, str):
        raise ConfigError(f"Site {site_key}: {label} must be a string path, got {path!r}")
    parse_path(path)
    return path


def _build_page(site_key: str, method: ParseMethod, page_type: str, raw: dict) -> PageConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Site {site_key}: page type {page_type!r} must be an object")

    allowed = _STUB_FIELDS if page_type == PageType.SEARCH.value else _RECORD_FIELDS
    full_records = bool(raw.get("fullRecords", False))
    if full_records:
        allowed = _RECORD_FIELDS

    if method is ParseMethod.JSON:
        fields = raw.get("fields")
        if not isinstance(fields, dict) or not fields:
            raise ConfigError(f"Site {site_key}: json page type {page_type!r} has no fields")
        unknown = sorted(set(fields) - allowed)
        if unknown:
            raise ConfigError(
                f"Site {site_key}: unknown field(s) in {page_type!r}: {', '.join(unknown)}"
            )
        base_path = raw.get("basePath")
        if not base_path:
            raise ConfigError(f"Site {site_key}: json page type {page_type!r} has no basePath")
        _check_path(site_key, "basePath", base_path)
        for name, path in fields.items():
            _check_path(site_key, f"fields.{name}", path)
        for key in ("dataPath", "listPath"):
            if raw.get(key) is not None:
                _check_path(site_key, key, raw[key])
        if raw.get("dataPath") and not raw.get("listPath"):
            raise ConfigError(f"Site {site_key}: dataPath in {page_type!r} requires a listPath")
        selectors: dict[str, str] = {}
    else:
        selectors = raw.get("selectors")
        if not isinstance(selectors, dict) or not selectors:
            raise ConfigError(f"Site {site_key}: css page type {page_type!r} has no selectors")
        if page_type == PageType.SEARCH.value:
            allowed = _CSS_SEARCH_SELECTORS
            if "list_items" not in selectors:
                raise ConfigError(f"Site {site_key}: css search page needs a list_items selector")
        unknown = sorted(set(selectors) - allowed)
        if unknown:
            raise ConfigError(
                f"Site {site_key}: unknown selector(s) in {page_type!r}: {', '.join(unknown)}"
            )
        fields = {}
        base_path = None

    mapping = dict(DEFAULT_PARAMETER_MAPPING)
    mapping.update(raw.get("parameterMapping") or {})

    rich_text = raw.get("richTextFields", ["source_title"])
    if not isinstance(rich_text, list):
        raise ConfigError(f"Site {site_key}: richTextFields must be a list")

    return PageConfig(
        base_path=base_path,
        data_path=raw.get("dataPath"),
        list_path=raw.get("listPath"),
        fields=dict(fields),
        selectors=dict(selectors),
        full_records=full_records,
        parameter_mapping=mapping,
        rich_text_fields=tuple(rich_text),
    )


def _build_site(site_key: str, raw: dict) -> SiteConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Site {site_key}: configuration must be an object")

    try:
        method = ParseMethod(raw.get("method"))
    except ValueError:
        raise ConfigError(f"Unsupported parsing method: {raw.get('method')}") from None

    raw_pages = raw.get("pageTypes")
    if not isinstance(raw_pages, dict) or PageType.DETAIL.value not in raw_pages:
        raise ConfigError(f"Site {site_key}: pageTypes must declare a 'detail' page type")
    unknown_pages = sorted(set(raw_pages) - {p.value for p in PageType})
    if unknown_pages:
        raise ConfigError(f"Site {site_key}: unknown page type(s): {', '.join(unknown_pages)}")

    page_types = {
        name: _build_page(site_key, method, name, page)
        for name, page in raw_pages.items()
    }

    auto_detection = None
    raw_detection = raw.get("autoDetection")
    if raw_detection is not None:
        if not isinstance(raw_detection, dict):
            raise ConfigError(f"Site {site_key}: autoDetection must be an object")
        auto_detection = AutoDetection(
            search_indicator=raw_detection.get("searchPageIndicator"),
            detail_indicator=raw_detection.get("detailPageIndicator"),
        )

    script_selector = raw.get("scriptSelector")
    state_variable = raw.get("stateVariable")
    if method is ParseMethod.JSON:
        if auto_detection is None:
            raise ConfigError(f"Site {site_key}: json sites need autoDetection")
        for label, path in (
            ("searchPageIndicator", auto_detection.search_indicator),
            ("detailPageIndicator", auto_detection.detail_indicator),
        ):
            if path is not None:
                _check_path(site_key, label, path)
        if not script_selector and not state_variable:
            script_selector = DEFAULT_SCRIPT_SELECTOR

    return SiteConfig(
        key=site_key,
        method=method,
        page_types=page_types,
        auto_detection=auto_detection,
        script_selector=script_selector,
        state_variable=state_variable,
        base_url=raw.get("baseUrl"),
    )


def load_parser_schema(path: str | Path) -> ParserSchema:
    """Read and validate the parser schema at *path*."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Parser schema file not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to load parser schema {path}: {exc}") from exc

    sites = raw.get("sites") if isinstance(raw, dict) else None
    if not isinstance(sites, dict):
        raise ConfigError("Invalid schema: missing or invalid sites configuration")

    schema = ParserSchema(sites={key: _build_site(key, site) for key, site in sites.items()})
    logger.debug("Loaded parser schema from %s (%d sites)", path, len(schema.sites))
    return schema
