from types import SimpleNamespace

import pytest
from scrapy.exceptions import DropItem

from conftest import make_record
from car_listing_analyzer.items import AI_FIELDS, VehicleItem
from car_listing_analyzer.pipelines import (
    CompleteRecordPipeline,
    DuplicateFilterPipeline,
    RepositoryPipeline,
)

SPIDER = SimpleNamespace(name="listings", site="olx")


def parsed_item(**fields) -> VehicleItem:
    item = VehicleItem(
        source_url="https://www.olx.pl/d/oferta/renault-trafic-ID10abc.html",
        source_title="Renault Trafic",
        title="Renault Trafic",
        price_pln=50000.0,
        price_eur=11500.0,
    )
    item.update(fields)
    return item


def test_duplicate_filter_drops_stored_urls(repository):
    repository.insert_vehicle(make_record(source_url="https://www.olx.pl/d/oferta/renault-trafic-ID10abc.html"))
    pipeline = DuplicateFilterPipeline(repository=repository)
    pipeline.open_spider(SPIDER)

    with pytest.raises(DropItem):
        pipeline.process_item(parsed_item(), SPIDER)
    fresh = parsed_item(source_url="https://www.olx.pl/d/oferta/other-ID99.html")
    assert pipeline.process_item(fresh, SPIDER) is fresh


def test_duplicate_filter_drops_items_without_url(repository):
    pipeline = DuplicateFilterPipeline(repository=repository)
    with pytest.raises(DropItem):
        pipeline.process_item(VehicleItem(title="x"), SPIDER)


def test_complete_record_fills_defaults():
    item = CompleteRecordPipeline().process_item(parsed_item(), SPIDER)

    assert item["id"]
    assert item["source"] == "olx"
    assert item["source_id"] == "10abc"
    assert item["source_parameters"] == {}
    assert item["source_equipment"] == {}
    assert item["source_photos"] == []
    assert item["features"] == []
    assert item["description"] is None
    assert item["seller_info"] == {"name": None, "id": None, "type": None, "location": None, "member_since": None}
    assert all(item[field] is None for field in AI_FIELDS)
    assert item["status"] == "new"
    assert item["created_at"] == item["scraped_at"]


def test_complete_record_rejects_unsupported_source():
    with pytest.raises(DropItem, match="Unsupported listing source"):
        CompleteRecordPipeline().process_item(parsed_item(), SimpleNamespace(name="listings", site="autoplac"))


def test_complete_record_title_fallback_and_price():
    item = CompleteRecordPipeline(pln_to_eur_rate=0.25).process_item(
        VehicleItem(source_url="https://www.otomoto.pl/oferta/abc", price_pln=40000.0), SPIDER
    )
    assert item["title"] == "Unknown Vehicle"
    assert item["source_id"] == "abc"
    assert item["price_eur"] == 10000.0
    assert (item["year"], item["mileage"]) == (0, 0)


def test_repository_pipeline_counts_duplicates(repository):
    complete = CompleteRecordPipeline()
    pipeline = RepositoryPipeline(repository=repository)
    pipeline.open_spider(SPIDER)

    pipeline.process_item(complete.process_item(parsed_item(), SPIDER), SPIDER)
    pipeline.process_item(complete.process_item(parsed_item(), SPIDER), SPIDER)
    pipeline.close_spider(SPIDER)

    assert (pipeline.inserted, pipeline.duplicates) == (1, 1)
    stored = repository.find_vehicle_by_url("https://www.olx.pl/d/oferta/renault-trafic-ID10abc.html")
    assert stored["source"] == "olx"
    assert stored["seller_info"]["name"] is None


def test_pipelines_open_their_own_repository(tmp_path):
    path = tmp_path / "data" / "vehicles.db"
    pipeline = RepositoryPipeline(database_path=str(path))
    pipeline.open_spider(SPIDER)
    pipeline.process_item(CompleteRecordPipeline().process_item(parsed_item(), SPIDER), SPIDER)
    pipeline.close_spider(SPIDER)

    assert path.exists()
    assert pipeline.repository is None
