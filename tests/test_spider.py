from datetime import datetime, timezone

import pytest
import scrapy
from scrapy.http import HtmlResponse

from conftest import (
    OLX_ADS,
    OTOMOTO_EDGES,
    make_record,
    next_data_page,
    olx_page,
    otomoto_detail_payload,
    otomoto_search_payload,
)
from car_listing_analyzer.items import VehicleItem
from car_listing_analyzer.spiders.listings import ListingSpider, build_page_url

START_URL = "https://www.otomoto.pl/dostawcze/renault/trafic?search%5Border%5D=created_at"


def response_for(url: str, html: str, **meta) -> HtmlResponse:
    request = scrapy.Request(url, meta=meta)
    return HtmlResponse(url=url, body=html, encoding="utf-8", request=request)


def spider_for(parser, site="otomoto", max_pages=None) -> ListingSpider:
    return ListingSpider(site=site, url=START_URL, max_pages=max_pages, parser=parser)


def test_site_and_url_are_required():
    with pytest.raises(ValueError):
        ListingSpider(site="otomoto")


def test_build_page_url_sets_page_parameter():
    assert build_page_url("https://x.pl/a?q=1", 3) == "https://x.pl/a?q=1&page=3"
    assert build_page_url("https://x.pl/a?page=2&q=1", 3) == "https://x.pl/a?page=3&q=1"


def test_search_page_follows_stubs_and_next_page(parser):
    spider = spider_for(parser)
    html = next_data_page(otomoto_search_payload(OTOMOTO_EDGES))

    requests = list(spider.parse_search(response_for(START_URL, html, page=1)))

    details = [r for r in requests if r.callback == spider.parse_detail]
    assert [r.meta["stub"]["source_id"] for r in details] == ["12345", "67890"]
    assert details[0].url == OTOMOTO_EDGES[0]["node"]["url"]
    assert details[0].meta["playwright"] is True
    (next_page,) = [r for r in requests if r.callback == spider.parse_search]
    assert next_page.meta["page"] == 2
    assert "page=2" in next_page.url


def test_search_pagination_stops_at_max_pages(parser):
    spider = spider_for(parser, max_pages=1)
    html = next_data_page(otomoto_search_payload(OTOMOTO_EDGES))

    requests = list(spider.parse_search(response_for(START_URL, html, page=1)))

    assert all(r.callback == spider.parse_detail for r in requests)


def test_search_page_errors_are_skipped(parser):
    spider = spider_for(parser)
    html = next_data_page(otomoto_detail_payload())
    assert list(spider.parse_search(response_for(START_URL, html, page=1))) == []


def test_full_record_search_pages_yield_items(parser):
    spider = spider_for(parser, site="olx", max_pages=1)
    html = olx_page({"listing": {"listing": {"ads": OLX_ADS}}})

    (item,) = list(spider.parse_search(response_for("https://www.olx.pl/motoryzacja/", html, page=1)))

    assert isinstance(item, VehicleItem)
    assert item["year"] == 2016


def test_detail_page_yields_item_with_stub_fallbacks(parser):
    spider = spider_for(parser)
    advert = {key: value for key, value in otomoto_detail_payload()["props"]["pageProps"]["advert"].items()
              if key not in ("url", "id")}
    url = "https://www.otomoto.pl/dostawcze/oferta/renault-trafic-ID6HG4T1.html"
    stub = {"source_id": "stub-id", "source_url": url, "source_title": "Stub title"}

    (item,) = list(spider.parse_detail(response_for(url, next_data_page(otomoto_detail_payload(advert)), stub=stub)))

    assert item["source_url"] == url
    assert item["source_id"] == "stub-id"
    assert item["title"] == "Renault Trafic 2.0 dCi L2H1"
    assert item["price_pln"] == 89900.0


def test_requests_skip_playwright_when_disabled(parser):
    spider = spider_for(parser)
    spider.use_playwright = False
    html = next_data_page(otomoto_search_payload(OTOMOTO_EDGES))

    requests = list(spider.parse_search(response_for(START_URL, html, page=1)))

    assert all("playwright" not in r.meta for r in requests)


def test_detail_page_takes_created_at_from_stub(parser):
    spider = spider_for(parser)
    advert = {key: value for key, value in otomoto_detail_payload()["props"]["pageProps"]["advert"].items()
              if key != "createdAt"}
    stub = {"source_url": advert["url"], "source_created_at": "2023-10-01T10:00:00Z"}

    (item,) = list(spider.parse_detail(
        response_for(advert["url"], next_data_page(otomoto_detail_payload(advert)), stub=stub)
    ))

    assert item["source_created_at"] == datetime(2023, 10, 1, 10, 0, tzinfo=timezone.utc)


def stored_spider(parser, repository) -> ListingSpider:
    return ListingSpider(site="otomoto", url=START_URL, parser=parser, repository=repository)


def test_pagination_stops_when_page_is_already_stored(parser, repository):
    for edge in OTOMOTO_EDGES:
        repository.insert_vehicle(make_record(source_url=edge["node"]["url"]))
    spider = stored_spider(parser, repository)
    html = next_data_page(otomoto_search_payload(OTOMOTO_EDGES))

    assert list(spider.parse_search(response_for(START_URL, html, page=1))) == []


def test_pagination_continues_when_few_listings_are_stored(parser, repository):
    repository.insert_vehicle(make_record(source_url=OTOMOTO_EDGES[0]["node"]["url"]))
    spider = stored_spider(parser, repository)
    html = next_data_page(otomoto_search_payload(OTOMOTO_EDGES))

    requests = list(spider.parse_search(response_for(START_URL, html, page=1)))

    details = [r for r in requests if r.callback == spider.parse_detail]
    assert [r.url for r in details] == [OTOMOTO_EDGES[1]["node"]["url"]]
    (next_page,) = [r for r in requests if r.callback == spider.parse_search]
    assert next_page.meta["page"] == 2
