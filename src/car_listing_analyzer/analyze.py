"""Resumable AI analysis of stored listings.

Which steps a vehicle still needs is derived from its current fields, so
re-running the pipeline only does the missing work.  Steps always run in
the order of :data:`STEPS`, because later steps read earlier results
(the priority rating looks at the fit score, sanity check, and market
value).

Translation is foundational: if it fails the vehicle is abandoned.  Any
other step failure is recorded and the remaining steps still run.  All
fields produced for one vehicle are persisted in a single write.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from car_listing_analyzer.errors import AIError, RateLimitError, ValidationError, VehicleNotFoundError

logger = logging.getLogger(__name__)

STEPS = (
    "translate",
    "sanity_check",
    "fit_score",
    "mechanic_report",
    "market_value",
    "priority_rating",
)

DEFAULT_FIT_SCORE = 5.0

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def get_required_analysis_steps(record) -> list[str]:
    """Steps whose output field is still missing, in execution order.

    A fit score of ``0`` is a real score; only ``None`` triggers the step.
    """
    required = []
    if record.get("description") is None:
        required.append("translate")
    if record.get("ai_data_sanity_check") is None:
        required.append("sanity_check")
    if record.get("personal_fit_score") is None:
        required.append("fit_score")
    if record.get("ai_mechanic_report") is None:
        required.append("mechanic_report")
    if not record.get("market_value_score"):
        required.append("market_value")
    if record.get("ai_priority_rating") is None:
        required.append("priority_rating")
    return required


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, AIError):
        if exc.status_code is not None:
            return exc.status_code in _RETRYABLE_STATUS
        return exc.retryable
    return False


def error_type_name(exc: BaseException) -> str:
    if isinstance(exc, RateLimitError):
        return "RateLimitError"
    if isinstance(exc, ValidationError):
        return "ValidationError"
    if isinstance(exc, AIError):
        return "AIError"
    return type(exc).__name__


@dataclass
class StepFailure:
    vehicle_id: str
    title: str | None
    url: str | None
    step: str
    message: str
    error_type: str
    retryable: bool


@dataclass
class AnalysisStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[StepFailure] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def step_failures(self) -> Counter:
        return Counter(f.step for f in self.failures)

    @property
    def retryable_failures(self) -> int:
        return sum(1 for f in self.failures if f.retryable)

    @property
    def permanent_failures(self) -> int:
        return sum(1 for f in self.failures if not f.retryable)

    def summary_lines(self) -> list[str]:
        end = self.finished_at or datetime.now(timezone.utc)
        lines = [
            f"Total vehicles: {self.total}",
            f"Completed:      {self.completed}",
            f"Failed:         {self.failed}",
            f"Skipped:        {self.skipped}",
            f"Duration:       {(end - self.started_at).total_seconds():.2f}s",
        ]
        if self.failures:
            lines.append(
                f"Step failures:  {len(self.failures)} "
                f"({self.retryable_failures} retryable, {self.permanent_failures} permanent)"
            )
            for step in STEPS:
                count = self.step_failures.get(step)
                if count:
                    lines.append(f"  {step:16s} {count}")
        return lines


class VehicleAnalyzer:
    """Run the analysis steps over stored vehicles.

    Parameters
    ----------
    repository:
        Vehicle storage (:class:`~car_listing_analyzer.repository.VehicleRepository`).
    ai:
        The AI collaborator (:class:`~car_listing_analyzer.ai.AIService`).
    estimator:
        :class:`~car_listing_analyzer.market_value.MarketValueEstimator`.
    user_criteria:
        Buyer criteria passed to the fit-score step.
    delay_seconds:
        Pause between vehicles, to stay under provider rate limits.
    """

    def __init__(self, repository, ai, estimator, user_criteria: dict, delay_seconds: float = 4.0, sleep=time.sleep):
        self.repository = repository
        self.ai = ai
        self.estimator = estimator
        self.user_criteria = user_criteria
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.stats = AnalysisStats()

    def _steps_for(self, record, resume: bool, skip_steps) -> list[str]:
        steps = get_required_analysis_steps(record) if resume else list(STEPS)
        return [step for step in steps if step not in skip_steps]

    def _fetch_batch(self, vehicle_id: str | None, limit: int | None, resume: bool, skip_steps) -> list[dict]:
        if vehicle_id:
            record = self.repository.find_vehicle_by_id(vehicle_id)
            if record is None:
                raise VehicleNotFoundError(f"Vehicle with ID {vehicle_id} not found")
            if not self._steps_for(record, resume, skip_steps):
                logger.info("Vehicle %s already has complete analysis", vehicle_id)
                return []
            return [record]

        if resume:
            vehicles = self.repository.find_vehicles_needing_analysis()
        else:
            vehicles = [v for v in self.repository.get_all_vehicles() if v.get("status") != "deleted"]
        if limit and limit > 0:
            vehicles = vehicles[:limit]
        return vehicles

    def run(self, vehicle_id: str | None = None, limit: int | None = None, resume: bool = True, skip_steps=()) -> AnalysisStats:
        self.stats = AnalysisStats()
        skip_steps = frozenset(skip_steps)
        vehicles = self._fetch_batch(vehicle_id, limit, resume, skip_steps)
        self.stats.total = len(vehicles)
        if not vehicles:
            logger.info("No vehicles need analysis")

        for index, record in enumerate(vehicles, 1):
            logger.info("[%d/%d] Analyzing vehicle %s", index, len(vehicles), record.get("id"))
            try:
                updates = self.analyze_vehicle(record, resume=resume, skip_steps=skip_steps)
            except Exception as exc:
                self.stats.failed += 1
                logger.error("Failed to analyze %s: %s", record.get("id"), exc)
            else:
                if updates:
                    self.stats.completed += 1
                else:
                    self.stats.skipped += 1

            if index < len(vehicles) and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)

        self.stats.finished_at = datetime.now(timezone.utc)
        return self.stats

    # ------------------------------------------------------------------
    # Single vehicle
    # ------------------------------------------------------------------

    def _record_failure(self, record, step: str, exc: BaseException) -> None:
        failure = StepFailure(
            vehicle_id=record.get("id"),
            title=record.get("title"),
            url=record.get("source_url"),
            step=step,
            message=str(exc),
            error_type=error_type_name(exc),
            retryable=is_retryable_error(exc),
        )
        self.stats.failures.append(failure)
        logger.warning(
            "Step %s failed for %s (%s, %s): %s",
            step, failure.vehicle_id, failure.error_type,
            "retryable" if failure.retryable else "permanent", failure.message,
        )

    def _run_step(self, step: str, current: dict) -> dict:
        if step == "translate":
            translation = self.ai.translate_vehicle_content(current)
            return {"description": translation["description"], "features": translation["features"]}
        if step == "sanity_check":
            return {"ai_data_sanity_check": self.ai.generate_data_sanity_check(current)}
        if step == "fit_score":
            return {"personal_fit_score": self.ai.generate_personal_fit_score(current, self.user_criteria)}
        if step == "mechanic_report":
            return {"ai_mechanic_report": self.ai.generate_mechanic_report(current)}
        if step == "market_value":
            score = self.estimator.calculate_market_value(current)
            return {"market_value_score": score} if score is not None else {}
        if step == "priority_rating":
            rating = self.ai.generate_priority_rating(current)
            return {"ai_priority_rating": rating["rating"], "ai_priority_summary": rating["summary"]}
        raise ValueError(f"Unknown analysis step: {step}")

    def analyze_vehicle(self, record, resume: bool = True, skip_steps=()) -> dict:
        """Run the missing steps for *record* and persist what they produced.

        Returns the persisted fields (empty when nothing was written).
        Raises when translation fails.
        """
        steps = self._steps_for(record, resume, frozenset(skip_steps))
        current = dict(record)
        updates: dict = {}

        for step in steps:
            try:
                produced = self._run_step(step, current)
            except Exception as exc:
                self._record_failure(record, step, exc)
                if step == "translate":
                    raise
                if step == "fit_score":
                    produced = {"personal_fit_score": DEFAULT_FIT_SCORE}
                else:
                    continue
            updates.update(produced)
            current.update(produced)

        if updates:
            self.repository.update_vehicle_analysis(record["id"], updates)
            logger.info("Saved %d analysis field(s) for %s", len(updates), record["id"])
        else:
            logger.info("No new analysis to save for %s", record.get("id"))
        return updates
