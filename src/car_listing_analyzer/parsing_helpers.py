"""Shared parsing and normalisation utilities for car-listing-analyzer.

This module consolidates the pure functions that turn raw scraped values
(prices, mileage, free text, dates, photo lists) into canonical types,
plus the finalisation pass the parser applies to every extracted vehicle
record.  Both the JSON and CSS extraction strategies route their raw
values through here so that behaviour is identical across sites.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pricing helpers
# ---------------------------------------------------------------------------

_LEADING_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def normalize_price(raw) -> float:
    """Parse a price such as ``"120.000,50 zł"``, ``"PLN 95,000"`` or ``50000``.

    Separator disambiguation:

    * both ``.`` and ``,`` present: ``.`` groups thousands, ``,`` is the
      decimal mark (``"120.000,50"`` → ``120000.5``);
    * only ``,`` present: a decimal mark when the fractional part has at
      most two digits and the integer part at most three (``"50,00"`` →
      ``50.0``), otherwise a thousands separator (``"50,000"`` → ``50000``).

    Returns ``0.0`` when nothing numeric can be parsed.
    """
    if raw is None or isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw)

    clean = re.sub(r"[^\d.,]", "", str(raw))
    if "," in clean and "." in clean:
        clean = clean.replace(".", "").replace(",", ".")
    elif "," in clean:
        parts = clean.split(",")
        if len(parts) == 2 and len(parts[1]) <= 2 and len(parts[0]) <= 3:
            clean = clean.replace(",", ".")
        else:
            clean = clean.replace(",", "")

    m = _LEADING_NUMBER_RE.match(clean)
    return float(m.group()) if m else 0.0


def convert_currency(amount: float, rate: float, ndigits: int = 2) -> float:
    """Convert *amount* with a fixed *rate*, rounding half-up to *ndigits* places."""
    try:
        converted = Decimal(str(amount)) * Decimal(str(rate))
    except InvalidOperation:
        return 0.0
    quantum = Decimal(1).scaleb(-ndigits)
    return float(converted.quantize(quantum, rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Numeric field helpers
# ---------------------------------------------------------------------------

_KM_SUFFIX_RE = re.compile(r"\s*km$", re.IGNORECASE)


def normalize_mileage(value) -> int:
    """Parse mileage like ``"150 000 km"`` or ``"75,500 KM"`` into kilometres.

    Returns ``0`` for unparseable input.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = _KM_SUFFIX_RE.sub("", str(value).strip())
    text = re.sub(r"[\s,]", "", text)
    m = re.match(r"\d+", text)
    return int(m.group()) if m else 0


def normalize_year(value) -> int:
    """Parse a production year (``"2017"``, ``2017``); ``0`` when unparseable."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    m = re.match(r"\s*(\d+)", str(value))
    return int(m.group(1)) if m else 0


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_HTML_TAG_RE = re.compile(r"<[^>]*>")

_HTML_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)


def normalize_text(text: str | None) -> str:
    """Strip HTML tags, collapse whitespace and decode basic HTML entities."""
    if not text:
        return ""
    cleaned = _HTML_TAG_RE.sub("", str(text))
    # A single pass over \s also folds runs of blank lines.
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    for entity, char in _HTML_ENTITIES:
        cleaned = cleaned.replace(entity, char)
    return cleaned


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------

_POLISH_MONTHS: dict[str, int] = {
    "stycznia": 1,
    "lutego": 2,
    "marca": 3,
    "kwietnia": 4,
    "maja": 5,
    "czerwca": 6,
    "lipca": 7,
    "sierpnia": 8,
    "września": 9,
    "października": 10,
    "listopada": 11,
    "grudnia": 12,
}

_TIME_OF_DAY_RE = re.compile(r"(\d{1,2}):(\d{2})")
_DAYS_AGO_RE = re.compile(r"(\d+)\s*(?:dni|dzień|dzien|days?)\s*(?:temu|ago)")
_WEEKS_AGO_RE = re.compile(r"(\d+)\s*(?:tygodni|tygodnie|tydzień|tydzien|weeks?)\s*(?:temu|ago)")
_DAY_MONTH_YEAR_RE = re.compile(r"(\d{1,2})\s+(\w+)\s+(\d{4})")

_FALLBACK_FORMATS = (
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y",
)


def _at_local_time(moment: datetime, hours: int, minutes: int) -> datetime:
    """Return *moment* with its wall-clock (local) time set to ``hours:minutes``."""
    local = moment.astimezone()
    return local.replace(hour=hours, minute=minutes, second=0, microsecond=0).astimezone(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_generic_date(text: str) -> datetime | None:
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in _FALLBACK_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return _as_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        return None


def normalize_date(text: str | None, now: datetime | None = None) -> datetime:
    """Convert a listing date string to an aware UTC ``datetime``.

    Recognised, in priority order:

    1. ``Dzisiaj o 07:18`` / ``today 07:18`` and ``Wczoraj o 15:30`` /
       ``yesterday`` (time of day optional, interpreted in local time);
    2. ``3 dni temu`` / ``3 days ago`` and ``2 tygodnie temu`` /
       ``2 weeks ago``;
    3. Polish month-name dates such as ``02 października 2025``;
    4. ISO-8601 and a few common numeric / RFC 2822 formats.

    Anything else falls back to *now* (a warning is logged).
    """
    now = now or datetime.now(timezone.utc)
    if not text:
        return now

    clean = normalize_text(text).lower()

    if "dzisiaj" in clean or "today" in clean:
        m = _TIME_OF_DAY_RE.search(clean)
        if m:
            return _at_local_time(now, int(m.group(1)), int(m.group(2)))
        return now

    if "wczoraj" in clean or "yesterday" in clean:
        yesterday = now - timedelta(days=1)
        m = _TIME_OF_DAY_RE.search(clean)
        if m:
            return _at_local_time(yesterday, int(m.group(1)), int(m.group(2)))
        return yesterday

    m = _DAYS_AGO_RE.search(clean)
    if m:
        return now - timedelta(days=int(m.group(1)))

    m = _WEEKS_AGO_RE.search(clean)
    if m:
        return now - timedelta(weeks=int(m.group(1)))

    m = _DAY_MONTH_YEAR_RE.search(clean)
    if m and m.group(2) in _POLISH_MONTHS:
        try:
            local_midnight = datetime(int(m.group(3)), _POLISH_MONTHS[m.group(2)], int(m.group(1)))
            return local_midnight.astimezone().astimezone(timezone.utc)
        except ValueError:
            pass

    parsed = _parse_generic_date(str(text).strip())
    if parsed is not None:
        return parsed

    logger.warning("Could not parse date %r, using current time", text)
    return now


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

def normalize_image_urls(urls) -> list[str]:
    """Clean a list of photo URLs.

    * empty / non-string entries are dropped;
    * protocol-relative URLs (``//cdn/x.jpg``) are upgraded to ``https:``;
    * root-relative URLs (``/img/x.jpg``) are passed through unresolved,
      since no page URL is available at this layer;
    * absolute URLs without a scheme and host are dropped.
    """
    if not isinstance(urls, list):
        return []

    cleaned: list[str] = []
    for url in urls:
        if not isinstance(url, str) or not url.strip():
            continue
        url = url.strip()
        if url.startswith("//"):
            url = "https:" + url
        elif url.startswith("/"):
            cleaned.append(url)
            continue
        parsed = urlparse(url)
        if parsed.scheme and parsed.netloc:
            cleaned.append(url)
    return cleaned


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

_LISTING_ID_RE = re.compile(r"ID(\w+?)(?:\.html|[/?#]|$)")


def listing_id_from_url(url: str | None) -> str | None:
    """``.../oferta/renault-trafic-ID6Gx1k2.html`` → ``6Gx1k2``."""
    if not url:
        return None
    m = _LISTING_ID_RE.search(url)
    return m.group(1) if m else None


# ---------------------------------------------------------------------------
# Nested structure converters
# ---------------------------------------------------------------------------

def _label_of(value):
    if isinstance(value, dict):
        return value.get("label") or value.get("key") or value.get("value")
    return value


def parameters_to_dict(items) -> dict[str, str]:
    """Turn ``[{label|key, value}, ...]`` parameter rows into ``{label: value}``."""
    params: dict[str, str] = {}
    if not isinstance(items, list):
        return params
    for item in items:
        if not isinstance(item, dict):
            continue
        key = item.get("label") or item.get("key")
        value = _label_of(item.get("value"))
        if key and value not in (None, ""):
            params[str(key)] = str(value)
    return params


def equipment_to_dict(items) -> dict[str, list[str]]:
    """Turn ``[{label, values: [{label}, ...]}, ...]`` into ``{category: [feature, ...]}``."""
    equipment: dict[str, list[str]] = {}
    if not isinstance(items, list):
        return equipment
    for item in items:
        if not isinstance(item, dict):
            continue
        label = item.get("label")
        values = item.get("values")
        if label and isinstance(values, list):
            equipment[str(label)] = [str(_label_of(v)) for v in values if _label_of(v)]
    return equipment


def photo_urls(items) -> list[str]:
    """Extract URLs from a photo list of ``{"url": ...}`` objects or plain strings."""
    if not isinstance(items, list):
        return []
    urls = []
    for photo in items:
        url = photo.get("url") if isinstance(photo, dict) else photo
        if url:
            urls.append(url)
    return urls


# ---------------------------------------------------------------------------
# Record finalisation
# ---------------------------------------------------------------------------

def finalize_record(item, pln_to_eur_rate: float, eur_ndigits: int = 2, now: datetime | None = None):
    """Apply the normalisation pass to a freshly extracted vehicle record.

    Normalises price (and derives ``price_eur``), title, photos, dates and
    numeric fields, then fills workflow defaults and timestamps.
    ``description`` is left untouched: it is produced by translation.
    """
    now = now or datetime.now(timezone.utc)

    if item.get("price_pln") is not None:
        price_pln = normalize_price(item["price_pln"])
        item["price_pln"] = price_pln
        item["price_eur"] = convert_currency(price_pln, pln_to_eur_rate, eur_ndigits)

    if item.get("source_title"):
        item["source_title"] = normalize_text(item["source_title"])
        item["title"] = item["source_title"]

    if item.get("source_photos") is not None:
        item["source_photos"] = normalize_image_urls(item["source_photos"])
        item["photos"] = list(item["source_photos"])

    if isinstance(item.get("source_created_at"), str):
        item["source_created_at"] = normalize_date(item["source_created_at"], now=now)

    if isinstance(item.get("year"), str):
        item["year"] = normalize_year(item["year"])
    if isinstance(item.get("mileage"), str):
        item["mileage"] = normalize_mileage(item["mileage"])

    item["features"] = item.get("features") or []
    item["status"] = item.get("status") or "new"
    item["personal_notes"] = item.get("personal_notes") or None

    item["scraped_at"] = now
    item["created_at"] = item.get("created_at") or now
    item["updated_at"] = now
    return item
