import json

import pytest

from conftest import make_record
from car_listing_analyzer.errors import RateLimitError, ValidationError, VehicleNotFoundError
from car_listing_analyzer.translate import (
    VehicleTranslator,
    equipment_features,
    exclusion_note,
    has_required_features,
)

WITH_TOWBAR = {"Komfort i dodatki": ["Hak holowniczy", "Radio"]}


class FakeAI:
    def __init__(self, fail=None):
        self.fail = fail or {}
        self.calls = []

    def translate_vehicle_content(self, record):
        self.calls.append(record["id"])
        if record["id"] in self.fail:
            raise self.fail[record["id"]]
        return {"description": "Good van.", "features": ["Towbar", "Radio"]}


def translator(repository, ai=None, required=("Hak",), sleeps=None):
    return VehicleTranslator(
        repository,
        ai or FakeAI(),
        required,
        delay_seconds=4.0,
        sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
    )


# ---------------------------------------------------------------------------
# Feature filter
# ---------------------------------------------------------------------------

def test_equipment_features_accepts_maps_lists_and_json():
    assert equipment_features(WITH_TOWBAR) == ["Hak holowniczy", "Radio"]
    assert equipment_features(["Hak"]) == ["Hak"]
    assert equipment_features(json.dumps(WITH_TOWBAR)) == ["Hak holowniczy", "Radio"]
    assert equipment_features(None) == []


@pytest.mark.parametrize(
    "equipment, required, expected",
    [
        (WITH_TOWBAR, ["hak"], True),
        (WITH_TOWBAR, ["Klimatyzacja", "RADIO"], True),
        (WITH_TOWBAR, ["Klimatyzacja"], False),
        ({}, ["Hak"], False),
        ({}, [], True),
        ("{not json", ["Hak"], False),
    ],
)
def test_has_required_features(equipment, required, expected):
    assert has_required_features({"id": "v", "source_equipment": equipment}, required) is expected


def test_exclusion_note_lists_required_features():
    note = json.loads(exclusion_note(["Hak", "Klimatyzacja"]))
    assert note["overallAssessment"] == "filtered_out"
    assert note["issues"][0]["message"].endswith("Hak, Klimatyzacja")


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def test_translates_and_stores(repository):
    vehicle_id = repository.insert_vehicle(make_record(source_equipment=WITH_TOWBAR))

    stats = translator(repository).run()

    assert (stats.total, stats.completed, stats.filtered, stats.failed) == (1, 1, 0, 0)
    stored = repository.find_vehicle_by_id(vehicle_id)
    assert stored["description"] == "Good van."
    assert stored["features"] == ["Towbar", "Radio"]
    assert stored["status"] == "new"


def test_vehicle_without_required_features_is_filtered(repository):
    vehicle_id = repository.insert_vehicle(make_record())
    ai = FakeAI()

    stats = translator(repository, ai).run()

    assert (stats.completed, stats.filtered) == (0, 1)
    assert ai.calls == []
    stored = repository.find_vehicle_by_id(vehicle_id)
    assert stored["status"] == "not_interested"
    assert stored["description"] is None
    assert json.loads(stored["ai_data_sanity_check"])["overallAssessment"] == "filtered_out"


def test_force_bypasses_filter_and_retranslates(repository):
    vehicle_id = repository.insert_vehicle(make_record(description="Old translation"))
    ai = FakeAI()

    stats = translator(repository, ai).run(force=True)

    assert stats.completed == 1
    assert ai.calls == [vehicle_id]
    assert repository.find_vehicle_by_id(vehicle_id)["description"] == "Good van."


def test_already_translated_vehicles_are_not_selected(repository):
    repository.insert_vehicle(make_record(description="Done", source_equipment=WITH_TOWBAR))
    assert translator(repository).run().total == 0


def test_failures_are_recorded_and_the_batch_continues(repository):
    first = repository.insert_vehicle(make_record(source_url="u1", source_equipment=WITH_TOWBAR))
    second = repository.insert_vehicle(make_record(source_url="u2", source_equipment=WITH_TOWBAR))
    ai = FakeAI(fail={first: RateLimitError("slow down")})

    stats = translator(repository, ai).run()

    assert (stats.completed, stats.failed) == (1, 1)
    (failure,) = stats.failures
    assert (failure.vehicle_id, failure.step, failure.error_type, failure.retryable) == (
        first, "translate", "RateLimitError", True,
    )
    assert repository.find_vehicle_by_id(second)["description"] == "Good van."
    assert any("retryable" in line for line in stats.summary_lines())


def test_delay_only_between_model_calls(repository):
    for n in range(3):
        repository.insert_vehicle(make_record(source_url=f"u{n}", source_equipment=WITH_TOWBAR))
    repository.insert_vehicle(make_record(source_url="filtered"))
    sleeps = []

    stats = translator(repository, sleeps=sleeps).run()

    assert (stats.completed, stats.filtered) == (3, 1)
    assert sleeps == [4.0, 4.0, 4.0]


def test_limit_and_single_vehicle(repository):
    ids = [
        repository.insert_vehicle(make_record(source_url=f"u{n}", source_equipment=WITH_TOWBAR))
        for n in range(3)
    ]
    assert translator(repository).run(limit=2).total == 2
    stats = translator(repository, FakeAI(fail={ids[2]: ValidationError("bad")})).run(vehicle_id=ids[2])
    assert (stats.total, stats.failed) == (1, 1)


def test_unknown_vehicle(repository):
    with pytest.raises(VehicleNotFoundError):
        translator(repository).run(vehicle_id="missing")
