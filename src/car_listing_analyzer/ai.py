"""Claude-backed analysis of vehicle listings.

Every operation sends one prompt, asks for a JSON answer, and validates
that answer before returning it.  SDK failures are mapped onto the
project's error taxonomy so the analysis pipeline can tell retryable
failures (rate limits, 5xx, dropped connections) from permanent ones.
"""

from __future__ import annotations

import json
import logging
import time

import anthropic

from car_listing_analyzer.errors import AIError, AuthenticationError, RateLimitError, ValidationError
from car_listing_analyzer.market_value import (
    ENGINE_SIZE_KEYS,
    FUEL_TYPE_KEYS,
    HORSEPOWER_KEYS,
    MAKE_KEYS,
    MODEL_KEYS,
    TRANSMISSION_KEYS,
    read_parameters,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

NO_DESCRIPTION_PLACEHOLDER = "No description provided by seller."
TRANSLATION_UNAVAILABLE = "Description translation unavailable."

SYSTEM_PROMPT = """You analyse used-vehicle listings from Polish classifieds sites for a private buyer.

Rules:
- Base every statement on the listing data you are given.
- Never invent equipment, service history, or prices.
- Answer with a single JSON object and nothing else."""

_TRANSLATE_PROMPT = """Translate this vehicle listing from Polish to English.

Description (HTML, Polish):
{description}

Equipment (Polish):
{equipment}

Return JSON: {{"description": "<plain-text English description>", "features": ["<English feature>", ...]}}
Translate every equipment item; keep the list order."""

_FIT_SCORE_PROMPT = """Rate how well this vehicle fits the buyer's criteria on a 0-10 scale.

Vehicle:
{vehicle}

Buyer criteria:
{criteria}

Return JSON: {{"score": <number 0-10>, "reasoning": "<one or two sentences>"}}"""

_PRIORITY_PROMPT = """Decide how urgently the buyer should follow up on this listing.
Weigh the personal fit score, the market value score (negative percentages
are below market) and the data sanity check.

Vehicle:
{vehicle}

Return JSON: {{"rating": <number 0-10>, "summary": "<two or three sentences>"}}"""

_MECHANIC_PROMPT = """Act as an experienced mechanic reviewing this listing before a viewing.
List known weak points of this model and engine, what to inspect, and
questions to ask the seller.

Vehicle:
{vehicle}

Return JSON: {{"report": "<plain-text report>"}}"""

_SANITY_CHECK_PROMPT = """Check this listing for internal consistency: does the description agree
with the parameters (year, mileage, engine, equipment)? Is anything
suspicious (mileage too low for the age, price far off, copy-pasted text)?

Vehicle:
{vehicle}

Return JSON: {{"consistencyScore": <number 0-10>, "trustLevel": "low|medium|high",
"summary": "<short summary>", "warnings": ["..."], "flags": ["..."]}}"""


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def parse_json_answer(text: str) -> dict:
    """Parse a model answer, tolerating a surrounding markdown code fence."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1].rsplit("```", 1)[0].strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"AI response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("AI response is not a JSON object")
    return data


def _is_score(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 10


def _retry_after(exc: anthropic.APIStatusError) -> float | None:
    value = exc.response.headers.get("retry-after") if exc.response is not None else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def format_sanity_check(result: dict) -> str:
    output = f"Consistency Score: {result['consistencyScore']}/10\n"
    output += f"Trust Level: {str(result['trustLevel']).upper()}\n\n"
    output += f"{result.get('summary', '')}\n"
    warnings = result.get("warnings") or []
    if warnings:
        output += "\nWARNINGS:\n" + "".join(f"- {w}\n" for w in warnings)
    flags = result.get("flags") or []
    if flags:
        output += "\nFLAGS:\n" + "".join(f"- {f}\n" for f in flags)
    return output


def _first(params: dict, keys: tuple[str, ...], default=None):
    for key in keys:
        if params.get(key):
            return params[key]
    return default


def vehicle_summary(record) -> dict:
    """The subset of a record included in analysis prompts."""
    params = read_parameters(record)
    return {
        "id": record.get("id"),
        "source": record.get("source"),
        "title": record.get("title"),
        "priceEur": record.get("price_eur"),
        "make": _first(params, MAKE_KEYS, "Unknown"),
        "model": _first(params, MODEL_KEYS, "Unknown"),
        "year": record.get("year"),
        "mileageKm": record.get("mileage"),
        "fuelType": _first(params, FUEL_TYPE_KEYS, "Unknown"),
        "transmission": _first(params, TRANSMISSION_KEYS, "Unknown"),
        "power": _first(params, HORSEPOWER_KEYS),
        "engineCapacity": _first(params, ENGINE_SIZE_KEYS),
        "description": record.get("description") or record.get("source_description_html"),
        "features": record.get("features") or [],
        "sourceParameters": params,
    }


def _flatten_equipment(equipment) -> list[str]:
    if isinstance(equipment, dict):
        return [str(feature) for features in equipment.values() for feature in features]
    if isinstance(equipment, list):
        return [str(feature) for feature in equipment]
    return []


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AIService:
    """Listing analysis on top of the Anthropic Messages API.

    Retryable failures are retried with exponential backoff
    (``base_delay * 2**n`` seconds, capped at ``max_delay``); a
    ``retry-after`` hint from a rate limit response takes precedence.
    The SDK's own retries are switched off, so ``max_attempts`` is the
    number of HTTP requests a failing call makes.
    """

    def __init__(
        self,
        client=None,
        model: str = DEFAULT_MODEL,
        http_client=None,
        max_tokens: int = 2048,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep=time.sleep,
    ):
        self._client = client
        self._http_client = http_client
        self.model = model
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = anthropic.Anthropic(max_retries=0, http_client=self._http_client)
            except anthropic.AnthropicError as exc:
                raise AuthenticationError(f"Could not create Anthropic client: {exc}") from exc
        return self._client

    # -- transport --------------------------------------------------------

    def _request(self, prompt: str) -> dict:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as exc:
            raise RateLimitError(str(exc), retry_after=_retry_after(exc)) from exc
        except anthropic.AuthenticationError as exc:
            raise AuthenticationError(str(exc)) from exc
        except anthropic.APIStatusError as exc:
            raise AIError(str(exc), status_code=exc.status_code, retryable=exc.status_code >= 500) from exc
        except anthropic.APIConnectionError as exc:
            raise AIError(f"Connection to AI provider failed: {exc}", retryable=True) from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return parse_json_answer(text)

    def _request_with_retry(self, prompt: str) -> dict:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._request(prompt)
            except AIError as exc:
                if not exc.retryable or attempt == self.max_attempts:
                    raise
                delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
                if isinstance(exc, RateLimitError) and exc.retry_after:
                    delay = min(max(delay, exc.retry_after), self.max_delay)
                logger.warning(
                    "AI call failed (%s); retrying in %.1fs (attempt %d/%d)",
                    exc, delay, attempt, self.max_attempts,
                )
                self.sleep(delay)
        raise AIError("AI call failed after retries")

    # -- operations -------------------------------------------------------

    def translate_vehicle_content(self, record) -> dict:
        """Return ``{"description": str, "features": [str, ...]}`` in English."""
        source_description = (record.get("source_description_html") or "").strip()
        if not source_description:
            logger.warning("Vehicle %s has no description - using placeholder", record.get("id"))
            return {"description": NO_DESCRIPTION_PLACEHOLDER, "features": []}

        equipment = _flatten_equipment(record.get("source_equipment"))
        answer = self._request_with_retry(_TRANSLATE_PROMPT.format(
            description=source_description,
            equipment=json.dumps(equipment, ensure_ascii=False),
        ))

        description = answer.get("description")
        if not isinstance(description, str) or not description.strip():
            logger.warning("AI returned an empty description for %s - using placeholder", record.get("id"))
            description = TRANSLATION_UNAVAILABLE

        features = answer.get("features") or []
        if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
            raise ValidationError("Translated features must be a list of strings", field="features")
        return {"description": description.strip(), "features": features}

    def generate_personal_fit_score(self, record, criteria: dict) -> float:
        answer = self._request_with_retry(_FIT_SCORE_PROMPT.format(
            vehicle=json.dumps(vehicle_summary(record), ensure_ascii=False, default=str),
            criteria=json.dumps(criteria, ensure_ascii=False),
        ))
        score = answer.get("score")
        if not _is_score(score):
            raise ValidationError(f"Invalid score returned from AI provider: {score!r}", field="score")
        return float(score)

    def generate_priority_rating(self, record) -> dict:
        """Return ``{"rating": float, "summary": str}``."""
        vehicle = vehicle_summary(record)
        vehicle.update(
            personalFitScore=record.get("personal_fit_score"),
            marketValueScore=record.get("market_value_score"),
            aiDataSanityCheck=record.get("ai_data_sanity_check"),
        )
        answer = self._request_with_retry(_PRIORITY_PROMPT.format(
            vehicle=json.dumps(vehicle, ensure_ascii=False, default=str),
        ))
        rating = answer.get("rating")
        if not _is_score(rating):
            raise ValidationError(f"Invalid rating returned from AI provider: {rating!r}", field="rating")
        summary = answer.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise ValidationError("Empty summary returned from AI provider", field="summary")
        return {"rating": float(rating), "summary": summary.strip()}

    def generate_mechanic_report(self, record) -> str:
        answer = self._request_with_retry(_MECHANIC_PROMPT.format(
            vehicle=json.dumps(vehicle_summary(record), ensure_ascii=False, default=str),
        ))
        report = answer.get("report")
        if not isinstance(report, str) or not report.strip():
            raise ValidationError("Empty report returned from AI provider", field="report")
        return report.strip()

    def generate_data_sanity_check(self, record) -> str:
        answer = self._request_with_retry(_SANITY_CHECK_PROMPT.format(
            vehicle=json.dumps(vehicle_summary(record), ensure_ascii=False, default=str),
        ))
        if not _is_score(answer.get("consistencyScore")):
            raise ValidationError("Invalid consistency score returned from AI provider", field="consistencyScore")
        if not isinstance(answer.get("trustLevel"), str) or not answer["trustLevel"]:
            raise ValidationError("Missing trust level in AI response", field="trustLevel")
        return format_sanity_check(answer)
