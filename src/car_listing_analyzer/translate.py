"""Translation of stored listings from Polish to English.

This is the ``translate`` step of the analysis pipeline run on its own,
with one extra rule: a vehicle whose Polish equipment list contains none
of the configured required features is marked ``not_interested`` without
calling the model.  ``force`` re-translates every vehicle and skips that
filter.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from car_listing_analyzer.analyze import StepFailure, error_type_name, is_retryable_error
from car_listing_analyzer.errors import VehicleNotFoundError
from car_listing_analyzer.items import VehicleStatus

logger = logging.getLogger(__name__)


def equipment_features(equipment) -> list[str]:
    if isinstance(equipment, str):
        equipment = json.loads(equipment)
    if isinstance(equipment, dict):
        return [str(feature) for features in equipment.values() for feature in features]
    if isinstance(equipment, list):
        return [str(feature) for feature in equipment]
    return []


def has_required_features(record, required_features) -> bool:
    """True when any equipment item contains any required feature (case-insensitive).

    Always true when no features are required.
    """
    if not required_features:
        return True
    try:
        features = equipment_features(record.get("source_equipment"))
    except json.JSONDecodeError:
        logger.warning("Vehicle %s: source equipment is not valid JSON", record.get("id"))
        return False
    wanted = [required.lower() for required in required_features]
    return any(w in feature.lower() for feature in features for w in wanted)


def exclusion_note(required_features) -> str:
    message = (
        "Vehicle automatically excluded: None of the required features found. "
        f"Vehicle must have at least one of: {', '.join(required_features)}"
    )
    return json.dumps(
        {"issues": [{"severity": "info", "message": message}], "overallAssessment": "filtered_out"},
        ensure_ascii=False,
    )


@dataclass
class TranslationStats:
    total: int = 0
    completed: int = 0
    filtered: int = 0
    failed: int = 0
    failures: list[StepFailure] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def summary_lines(self) -> list[str]:
        end = self.finished_at or datetime.now(timezone.utc)
        lines = [
            f"Total vehicles: {self.total}",
            f"Translated:     {self.completed}",
            f"Filtered out:   {self.filtered}",
            f"Failed:         {self.failed}",
            f"Duration:       {(end - self.started_at).total_seconds():.2f}s",
        ]
        for failure in self.failures:
            badge = "retryable" if failure.retryable else "permanent"
            lines.append(f"  {failure.vehicle_id} ({badge}): {failure.message}")
        return lines


class VehicleTranslator:
    """Translate stored vehicles with the AI collaborator.

    *required_features* are Polish equipment names (substring match); an
    empty list lets every vehicle through.
    """

    def __init__(self, repository, ai, required_features=(), delay_seconds: float = 4.0, sleep=time.sleep):
        self.repository = repository
        self.ai = ai
        self.required_features = list(required_features)
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.stats = TranslationStats()

    def _fetch_batch(self, vehicle_id: str | None, limit: int | None, force: bool) -> list[dict]:
        if vehicle_id:
            record = self.repository.find_vehicle_by_id(vehicle_id)
            if record is None:
                raise VehicleNotFoundError(f"Vehicle with ID {vehicle_id} not found")
            return [record]
        vehicles = self.repository.find_vehicles_needing_translation(force)
        if limit and limit > 0:
            vehicles = vehicles[:limit]
        return vehicles

    def run(self, vehicle_id: str | None = None, limit: int | None = None, force: bool = False) -> TranslationStats:
        self.stats = TranslationStats()
        vehicles = self._fetch_batch(vehicle_id, limit, force)
        self.stats.total = len(vehicles)
        if not vehicles:
            logger.info("No vehicles need translation")

        for index, record in enumerate(vehicles, 1):
            logger.info("[%d/%d] Translating vehicle %s", index, len(vehicles), record.get("id"))
            try:
                filtered = self.translate_vehicle(record, force=force)
            except Exception as exc:
                self.stats.failed += 1
                self.stats.failures.append(StepFailure(
                    vehicle_id=record.get("id"),
                    title=record.get("title"),
                    url=record.get("source_url"),
                    step="translate",
                    message=str(exc),
                    error_type=error_type_name(exc),
                    retryable=is_retryable_error(exc),
                ))
                logger.error("Failed to translate %s: %s", record.get("id"), exc)
                continue

            if filtered:
                self.stats.filtered += 1
                continue
            self.stats.completed += 1
            # Only model calls count against the rate limit.
            if index < len(vehicles) and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)

        self.stats.finished_at = datetime.now(timezone.utc)
        return self.stats

    def translate_vehicle(self, record, force: bool = False) -> bool:
        """Translate and store *record*; return True when it was filtered out instead."""
        if not force and not has_required_features(record, self.required_features):
            logger.info("Vehicle %s has none of the required features, marking not interested", record.get("id"))
            self.repository.update_vehicle(record["id"], {
                "status": VehicleStatus.NOT_INTERESTED.value,
                "ai_data_sanity_check": exclusion_note(self.required_features),
            })
            return True

        translation = self.ai.translate_vehicle_content(record)
        self.repository.update_vehicle(record["id"], {
            "description": translation["description"],
            "features": translation["features"],
        })
        logger.info("Saved translation for %s (%d features)", record["id"], len(translation["features"]))
        return False
