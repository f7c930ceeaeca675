import json

import pytest
from click.testing import CliRunner

from conftest import CSS_DETAIL_HTML, OTOMOTO_EDGES, make_record, next_data_page, otomoto_search_payload
from car_listing_analyzer.cli import main
from car_listing_analyzer.repository import VehicleRepository


@pytest.fixture
def config_file(tmp_path, schema_path, search_config_path):
    path = tmp_path / "car-listing-analyzer.toml"
    path.write_text(
        f'database_path = "vehicles.db"\n'
        f'parser_schema_path = "{schema_path.as_posix()}"\n'
        f'search_config_path = "{search_config_path.as_posix()}"\n'
        f"analysis_delay_seconds = 0\n",
        encoding="utf-8",
    )
    return path


def invoke(config_file, *args):
    return CliRunner().invoke(main, ["--config", str(config_file), *args])


def test_list_sites(config_file):
    result = invoke(config_file, "list-sites")
    assert result.exit_code == 0, result.output
    assert "otomoto" in result.stdout
    assert "method=css" in result.stdout


def test_parse_saved_search_page(config_file, tmp_path):
    page = tmp_path / "search.html"
    page.write_text(next_data_page(otomoto_search_payload(OTOMOTO_EDGES)), encoding="utf-8")

    result = invoke(config_file, "parse", str(page), "--site", "otomoto")

    assert result.exit_code == 0, result.output
    output = json.loads(result.stdout)
    assert output["pageType"] == "search"
    assert [stub["source_id"] for stub in output["data"]] == ["12345", "67890"]


def test_parse_detail_page(config_file, tmp_path):
    page = tmp_path / "detail.html"
    page.write_text(CSS_DETAIL_HTML, encoding="utf-8")

    result = invoke(config_file, "parse", str(page), "--site", "autoplac", "--page-type", "detail")

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)["data"]
    assert data["price_pln"] == 45000.0
    assert data["seller_info"]["name"] == "Auto-Handel"


def test_parse_page_type_mismatch_fails(config_file, tmp_path):
    page = tmp_path / "search.html"
    page.write_text(next_data_page(otomoto_search_payload(OTOMOTO_EDGES)), encoding="utf-8")

    result = invoke(config_file, "parse", str(page), "--site", "otomoto", "--page-type", "detail")

    assert result.exit_code == 1
    assert "Page type mismatch" in result.output


def test_parse_needs_file_or_url(config_file):
    result = invoke(config_file, "parse", "--site", "otomoto")
    assert result.exit_code == 2


def test_crawl_unknown_site_fails_before_crawling(config_file):
    result = invoke(config_file, "crawl", "mobile", "--url", "https://example.com")
    assert result.exit_code == 1
    assert "No configuration found for site: mobile" in result.output


def test_crawl_rejects_sites_outside_supported_sources(config_file):
    result = invoke(config_file, "crawl", "autoplac", "--url", "https://autoplac.example.pl")
    assert result.exit_code == 1
    assert "Unsupported listing source: autoplac" in result.output


def test_translate_with_empty_database(config_file):
    result = invoke(config_file, "translate", "--limit", "5")
    assert result.exit_code == 0, result.output
    assert "Total vehicles: 0" in result.stdout


def test_translate_filters_vehicles_without_required_features(config_file, tmp_path):
    with VehicleRepository(tmp_path / "vehicles.db") as repo:
        vehicle_id = repo.insert_vehicle(make_record(source_equipment={"Komfort": ["Radio"]}))

    result = invoke(config_file, "translate")

    assert result.exit_code == 0, result.output
    assert "Filtered out:   1" in result.stdout
    with VehicleRepository(tmp_path / "vehicles.db") as repo:
        assert repo.find_vehicle_by_id(vehicle_id)["status"] == "not_interested"


def test_analyze_with_empty_database(config_file):
    result = invoke(config_file, "analyze", "--limit", "5")
    assert result.exit_code == 0, result.output
    assert "Total vehicles: 0" in result.stdout


def test_market_value_command(config_file, tmp_path):
    with VehicleRepository(tmp_path / "vehicles.db") as repo:
        target = repo.insert_vehicle(make_record(source_url="t", price_eur=10000.0, mileage=150000))
        for n in range(3):
            repo.insert_vehicle(make_record(source_url=f"c{n}", price_eur=11000.0, mileage=150000))

    result = invoke(config_file, "market-value", target, "--save")

    assert result.exit_code == 0, result.output
    assert "Renault Trafic: -9%" in result.stdout
    with VehicleRepository(tmp_path / "vehicles.db") as repo:
        assert repo.find_vehicle_by_id(target)["market_value_score"] == "-9%"


def test_market_value_unknown_vehicle(config_file):
    result = invoke(config_file, "market-value", "missing")
    assert result.exit_code == 1


def test_invalid_config_file(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text('nope = 1\n', encoding="utf-8")
    result = CliRunner().invoke(main, ["--config", str(path), "list-sites"])
    assert result.exit_code == 1
    assert "nope" in result.output
