"""Market value estimation from comparable listings.

A listing's price is compared against a weighted average of comparable
stored listings (same make/model or a platform twin from the same
equivalency group, similar year and mileage).  Each comparable is
weighted by

* mileage proximity: ``1 / (1 + |Δkm| / 10000)``,
* its equivalency-group weight (platform twins can count for less),
* an attribute weight: stepped penalties for engine size / horsepower
  differences beyond a tolerance and flat penalties for transmission,
  fuel type and wheelbase mismatches,

and its price is adjusted for condition before averaging (high-mileage
penalties, a low-mileage bonus for vehicles older than ten years).

The result is a percentage string such as ``"-7%"`` / ``"+12%"``, or
``"market_avg"`` within ±2%.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from car_listing_analyzer.errors import ConfigError

logger = logging.getLogger(__name__)

MARKET_AVG = "market_avg"

# Known parameter-name variants (Polish parameter-table labels, English labels,
# and the keys lifted out of raw parameter arrays).
MAKE_KEYS = ("Marka pojazdu", "make", "Make")
MODEL_KEYS = ("Model pojazdu", "model", "Model")
ENGINE_SIZE_KEYS = ("Pojemność skokowa", "Engine size", "engineSize")
HORSEPOWER_KEYS = ("Moc", "Power", "horsepower")
TRANSMISSION_KEYS = ("Skrzynia biegów", "Transmission", "transmission")
FUEL_TYPE_KEYS = ("Rodzaj paliwa", "Fuel type", "fuelType")
VERSION_KEYS = ("Wersja", "Version", "version")

_ENGINE_SIZE_RE = re.compile(r"(\d[\d\s]*)\s*(cm3|cc)")
_HORSEPOWER_RE = re.compile(r"(\d+)\s*(KM|HP|hp)")
_WHEELBASE_RE = re.compile(r"L([123])")


@dataclass(frozen=True)
class VehicleEquivalent:
    make: str
    model: str
    weight: float = 1.0


@dataclass(frozen=True)
class EquivalencyGroup:
    name: str
    vehicles: tuple[VehicleEquivalent, ...]


@dataclass(frozen=True)
class AttributeWeights:
    engine_size_tolerance_cc: float
    engine_size_penalty: float
    horsepower_tolerance_hp: float
    horsepower_penalty: float
    transmission_mismatch_penalty: float
    fuel_type_mismatch_penalty: float
    wheelbase_mismatch_penalty: float


@dataclass(frozen=True)
class MatchingCriteria:
    year_range: int = 3
    mileage_range_km: int = 50_000
    min_comparables: int = 3


@dataclass(frozen=True)
class MarketValueConfig:
    groups: tuple[EquivalencyGroup, ...] = ()
    attribute_weights: AttributeWeights | None = None
    matching: MatchingCriteria = field(default_factory=MatchingCriteria)


@dataclass
class Comparable:
    """A comparable listing plus the weights computed for it."""

    record: dict
    equivalency_weight: float = 1.0
    attribute_weight: float = 1.0

    @property
    def price_eur(self) -> float:
        return float(self.record.get("price_eur") or 0)

    @property
    def mileage(self) -> int:
        return int(self.record.get("mileage") or 0)

    @property
    def year(self) -> int:
        return int(self.record.get("year") or 0)


# ---------------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------------

_ATTRIBUTE_KEYS = {
    "engine_size_tolerance_cc": "engineSize_tolerance_cc",
    "engine_size_penalty": "engineSize_penalty",
    "horsepower_tolerance_hp": "horsepower_tolerance_hp",
    "horsepower_penalty": "horsepower_penalty",
    "transmission_mismatch_penalty": "transmission_mismatch_penalty",
    "fuel_type_mismatch_penalty": "fuelType_mismatch_penalty",
    "wheelbase_mismatch_penalty": "wheelbase_mismatch_penalty",
}


def parse_market_value_config(settings: dict) -> MarketValueConfig:
    """Build a :class:`MarketValueConfig` from a ``marketValueSettings`` mapping."""
    groups = []
    for raw_group in (settings.get("vehicleEquivalency") or {}).get("groups") or []:
        try:
            vehicles = tuple(
                VehicleEquivalent(str(v["make"]), str(v["model"]), float(v.get("weight", 1.0)))
                for v in raw_group.get("vehicles") or []
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid equivalency group {raw_group.get('name')!r}: {exc}") from exc
        groups.append(EquivalencyGroup(name=str(raw_group.get("name", "")), vehicles=vehicles))

    attribute_weights = None
    raw_weights = settings.get("attributeWeights")
    if raw_weights is not None:
        missing = [key for key in _ATTRIBUTE_KEYS.values() if key not in raw_weights]
        if missing:
            raise ConfigError(f"attributeWeights is missing: {', '.join(missing)}")
        attribute_weights = AttributeWeights(
            **{name: float(raw_weights[key]) for name, key in _ATTRIBUTE_KEYS.items()}
        )
        if attribute_weights.engine_size_tolerance_cc <= 0 or attribute_weights.horsepower_tolerance_hp <= 0:
            raise ConfigError("attributeWeights tolerances must be positive")

    raw_matching = settings.get("matchingCriteria") or {}
    matching = MatchingCriteria(
        year_range=int(raw_matching.get("yearRange", 3)),
        mileage_range_km=int(raw_matching.get("mileageRange_km", 50_000)),
        min_comparables=int(raw_matching.get("minComparables", 3)),
    )
    return MarketValueConfig(groups=tuple(groups), attribute_weights=attribute_weights, matching=matching)


def load_market_value_config(path: str | Path) -> MarketValueConfig:
    """Load the ``marketValueSettings`` section of a search-config JSON file."""
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Search config file not found: {path}") from None
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to load search config {path}: {exc}") from exc

    settings = raw.get("marketValueSettings") if isinstance(raw, dict) else None
    if not isinstance(settings, dict):
        raise ConfigError(f"marketValueSettings not found in {path}")
    return parse_market_value_config(settings)


# ---------------------------------------------------------------------------
# Attribute extraction
# ---------------------------------------------------------------------------

def read_parameters(record) -> dict:
    """Return a record's ``source_parameters`` as a dict (JSON strings are decoded)."""
    params = record.get("source_parameters")
    if isinstance(params, str):
        try:
            params = json.loads(params)
        except json.JSONDecodeError:
            return {}
    return params if isinstance(params, dict) else {}


def _first(params: dict, keys: tuple[str, ...]):
    for key in keys:
        if params.get(key):
            return params[key]
    return None


def extract_make_model(params: dict) -> tuple[str | None, str | None]:
    return _first(params, MAKE_KEYS), _first(params, MODEL_KEYS)


def extract_engine_size(params: dict) -> int | None:
    """``"1 995 cm3"`` → ``1995``."""
    value = _first(params, ENGINE_SIZE_KEYS)
    m = _ENGINE_SIZE_RE.search(str(value)) if value else None
    return int(re.sub(r"\s", "", m.group(1))) if m else None


def extract_horsepower(params: dict) -> int | None:
    """``"115 KM"`` → ``115``."""
    value = _first(params, HORSEPOWER_KEYS)
    m = _HORSEPOWER_RE.search(str(value)) if value else None
    return int(m.group(1)) if m else None


def extract_transmission(params: dict) -> str | None:
    value = _first(params, TRANSMISSION_KEYS)
    if not value:
        return None
    normalized = str(value).lower()
    if "manual" in normalized:
        return "manual"
    if "automat" in normalized:
        return "automatic"
    return None


def extract_fuel_type(params: dict) -> str | None:
    value = _first(params, FUEL_TYPE_KEYS)
    if not value:
        return None
    normalized = str(value).lower()
    if "diesel" in normalized:
        return "diesel"
    if "petrol" in normalized or "benzyna" in normalized:
        return "petrol"
    if "lpg" in normalized:
        return "lpg"
    if "electric" in normalized:
        return "electric"
    return None


def extract_wheelbase(params: dict) -> str | None:
    """``"L2H2 Extra"`` → ``"L2"``."""
    value = _first(params, VERSION_KEYS)
    m = _WHEELBASE_RE.search(str(value)) if value else None
    return f"L{m.group(1)}" if m else None


# ---------------------------------------------------------------------------
# Weighting
# ---------------------------------------------------------------------------

def find_equivalent_models(make: str, model: str, groups) -> list[VehicleEquivalent]:
    """Return every member of the first group containing *make*/*model*.

    Ungrouped vehicles yield a single entry with weight ``1.0``.
    """
    make_l, model_l = make.lower(), model.lower()
    for group in groups:
        if any(v.make.lower() == make_l and v.model.lower() == model_l for v in group.vehicles):
            return list(group.vehicles)
    return [VehicleEquivalent(make, model, 1.0)]


def _stepped_penalty(target: int | None, other: int | None, tolerance: float, penalty: float) -> float:
    if not target or not other:
        return 1.0
    diff = abs(target - other)
    if diff <= tolerance:
        return 1.0
    steps = math.floor((diff - tolerance) / tolerance)
    return (1 - penalty) ** steps


def _mismatch_penalty(target: str | None, other: str | None, penalty: float) -> float:
    if target and other and target != other:
        return 1 - penalty
    return 1.0


def attribute_weight(target_params: dict, comp_params: dict, weights: AttributeWeights | None) -> float:
    """Product of per-attribute penalty factors, in ``(0, 1]``.

    Attributes unknown on either side are never penalised.
    """
    if weights is None:
        return 1.0

    weight = 1.0
    weight *= _stepped_penalty(
        extract_engine_size(target_params), extract_engine_size(comp_params),
        weights.engine_size_tolerance_cc, weights.engine_size_penalty,
    )
    weight *= _stepped_penalty(
        extract_horsepower(target_params), extract_horsepower(comp_params),
        weights.horsepower_tolerance_hp, weights.horsepower_penalty,
    )
    weight *= _mismatch_penalty(
        extract_transmission(target_params), extract_transmission(comp_params),
        weights.transmission_mismatch_penalty,
    )
    weight *= _mismatch_penalty(
        extract_fuel_type(target_params), extract_fuel_type(comp_params),
        weights.fuel_type_mismatch_penalty,
    )
    weight *= _mismatch_penalty(
        extract_wheelbase(target_params), extract_wheelbase(comp_params),
        weights.wheelbase_mismatch_penalty,
    )
    return weight


def mileage_weight(target_mileage: int, comp_mileage: int) -> float:
    return 1 / (1 + abs(comp_mileage - target_mileage) / 10_000)


def adjust_price(price: float, mileage: int, year: int, current_year: int) -> float:
    """Apply condition adjustments to a comparable's price.

    -10% above 200,000 km, a further -10% above 250,000 km, and +10% for
    vehicles under 120,000 km that are more than ten years old.
    """
    adjusted = price
    if mileage > 200_000:
        adjusted *= 0.90
    if mileage > 250_000:
        adjusted *= 0.90
    if mileage < 120_000 and current_year - year > 10:
        adjusted *= 1.10
    return adjusted


def weighted_average(target_mileage: int, comparables: list[Comparable], current_year: int) -> float:
    total_weighted_price = 0.0
    total_weight = 0.0
    for comp in comparables:
        weight = (
            mileage_weight(target_mileage, comp.mileage)
            * comp.equivalency_weight
            * comp.attribute_weight
        )
        total_weighted_price += adjust_price(comp.price_eur, comp.mileage, comp.year, current_year) * weight
        total_weight += weight

    if total_weight == 0:
        logger.warning("Total comparable weight is zero, falling back to a simple average")
        return sum(c.price_eur for c in comparables) / len(comparables)
    return total_weighted_price / total_weight


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_percentage_difference(price: float, average: float) -> str:
    if average == 0:
        logger.warning("Average comparable price is zero, reporting market average")
        return MARKET_AVG
    rounded = round_half_up((price - average) / average * 100)
    if abs(rounded) < 2:
        return MARKET_AVG
    if rounded > 0:
        return f"+{rounded}%"
    return f"{rounded}%"


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------

class MarketValueEstimator:
    """Score listings against comparables fetched from a vehicle repository.

    Parameters
    ----------
    repository:
        Anything with a ``find_comparable_vehicles(...)`` method returning
        record dicts (see :class:`~car_listing_analyzer.repository.VehicleRepository`).
    config:
        Equivalency groups, attribute weights and matching criteria.
    today:
        Reference date for vehicle age; defaults to the current date.
    """

    def __init__(self, repository, config: MarketValueConfig, today: date | None = None):
        self.repository = repository
        self.config = config
        self.today = today

    @property
    def current_year(self) -> int:
        return (self.today or date.today()).year

    def find_comparables(self, target) -> list[Comparable]:
        target_params = read_parameters(target)
        make, model = extract_make_model(target_params)
        if not make or not model:
            logger.warning("Missing make/model for vehicle %s", target.get("id"))
            return []

        equivalents = find_equivalent_models(str(make), str(model), self.config.groups)
        logger.debug("Found %d equivalent model(s) for %s %s", len(equivalents), make, model)

        matching = self.config.matching
        comparables: list[Comparable] = []
        for equivalent in equivalents:
            rows = self.repository.find_comparable_vehicles(
                source=target.get("source"),
                make=equivalent.make,
                model=equivalent.model,
                year=target.get("year") or 0,
                mileage=target.get("mileage") or 0,
                exclude_id=target.get("id"),
                year_range=matching.year_range,
                mileage_range=matching.mileage_range_km,
            )
            for row in rows:
                comparables.append(Comparable(
                    record=row,
                    equivalency_weight=equivalent.weight,
                    attribute_weight=attribute_weight(
                        target_params, read_parameters(row), self.config.attribute_weights
                    ),
                ))
        return comparables

    def calculate_market_value(self, target) -> str | None:
        """Return the percentage string for *target*, or ``None`` with too few comparables.

        Lookup failures are logged and yield ``None`` so batch processing
        can continue.
        """
        try:
            comparables = self.find_comparables(target)
        except Exception:
            logger.exception("Error finding comparable vehicles for %s", target.get("id"))
            return None

        required = self.config.matching.min_comparables
        if not comparables or len(comparables) < required:
            logger.info(
                "Insufficient comparables (%d/%d) for vehicle %s",
                len(comparables), required, target.get("id"),
            )
            return None

        average = weighted_average(target.get("mileage") or 0, comparables, self.current_year)
        logger.info(
            "Vehicle %s: %d comparables, weighted average EUR %.0f",
            target.get("id"), len(comparables), average,
        )
        return format_percentage_difference(float(target.get("price_eur") or 0), average)
