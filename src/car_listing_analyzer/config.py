"""Application configuration.

Settings are read once from a TOML file (``car-listing-analyzer.toml`` by
default) plus a couple of environment overrides, and the resulting
:class:`AppConfig` is passed explicitly to whatever needs it::

    database_path = "data/vehicles.db"
    parser_schema_path = "parser-schema.json"
    search_config_path = "search-config.json"
    pln_to_eur_rate = 0.23
    analysis_delay_seconds = 4.0
    ai_model = "claude-sonnet-4-20250514"
    log_level = "INFO"

Relative paths are resolved against the directory of the TOML file.
``ANTHROPIC_API_KEY`` is read by the Anthropic SDK itself.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path

from car_listing_analyzer.ai import DEFAULT_MODEL
from car_listing_analyzer.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "car-listing-analyzer.toml"

ENV_DATABASE = "CAR_LISTING_DATABASE"
ENV_LOG_LEVEL = "CAR_LISTING_LOG_LEVEL"

DEFAULT_USER_CRITERIA: dict = {
    "budgetEur": {"min": 5000, "max": 20000},
    "preferredFeatures": ["air_conditioning", "parking_sensors"],
    "useCase": "daily commute",
    "priorityFactors": ["fuel_efficiency", "reliability"],
}


@dataclass(frozen=True)
class AppConfig:
    database_path: Path = Path("data/vehicles.db")
    parser_schema_path: Path = Path("parser-schema.json")
    search_config_path: Path = Path("search-config.json")
    pln_to_eur_rate: float = 0.23
    analysis_delay_seconds: float = 4.0
    ai_model: str = DEFAULT_MODEL
    log_level: str = "INFO"


_PATH_KEYS = ("database_path", "parser_schema_path", "search_config_path")


def load_app_config(path: str | Path | None = None, environ=None) -> AppConfig:
    """Build an :class:`AppConfig` from *path* (optional) and the environment.

    A missing default config file is not an error; a missing explicit one is.
    """
    environ = os.environ if environ is None else environ
    values: dict = {}
    base_dir = Path.cwd()

    config_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid config file {config_path}: {exc}") from exc
        known = {f.name for f in fields(AppConfig)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s) in {config_path}: {', '.join(unknown)}")
        values.update(raw)
        base_dir = config_path.resolve().parent
    elif path:
        raise ConfigError(f"Config file not found: {config_path}")

    if environ.get(ENV_DATABASE):
        values["database_path"] = environ[ENV_DATABASE]
    if environ.get(ENV_LOG_LEVEL):
        values["log_level"] = environ[ENV_LOG_LEVEL]

    for key in _PATH_KEYS:
        if key in values:
            p = Path(values[key])
            values[key] = p if p.is_absolute() else base_dir / p

    try:
        if "pln_to_eur_rate" in values:
            values["pln_to_eur_rate"] = float(values["pln_to_eur_rate"])
        if "analysis_delay_seconds" in values:
            values["analysis_delay_seconds"] = float(values["analysis_delay_seconds"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric config value: {exc}") from exc
    values["log_level"] = str(values.get("log_level", "INFO")).upper()

    return AppConfig(**values)


def load_user_criteria(search_config_path: str | Path) -> dict:
    """Read ``analysisSettings.userCriteria`` from the search config.

    Falls back to :data:`DEFAULT_USER_CRITERIA` (with a logged error) when
    the file or section is missing.
    """
    try:
        raw = json.loads(Path(search_config_path).read_text(encoding="utf-8"))
        criteria = raw["analysisSettings"]["userCriteria"]
        if not isinstance(criteria, dict):
            raise TypeError("userCriteria must be an object")
        return criteria
    except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
        logger.error(
            "Failed to load user criteria from %s (%s); using default criteria",
            search_config_path, exc,
        )
        return dict(DEFAULT_USER_CRITERIA)


def load_required_features(search_config_path: str | Path) -> list[str]:
    """Read the top-level ``requiredFeatures`` list from the search config.

    A missing file or key means no feature filter.
    """
    try:
        raw = json.loads(Path(search_config_path).read_text(encoding="utf-8"))
    except OSError as exc:
        logger.warning("Could not read %s (%s); translating without a feature filter", search_config_path, exc)
        return []
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid search config {search_config_path}: {exc}") from exc
    features = raw.get("requiredFeatures") or []
    if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
        raise ConfigError("requiredFeatures must be a list of strings")
    return features
