"""Shared fixtures: parser schema, sample pages, fakes for the AI and storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from car_listing_analyzer.parser import SchemaParser
from car_listing_analyzer.repository import VehicleRepository

FIXTURES = Path(__file__).parent / "fixtures"


# ---------------------------------------------------------------------------
# Sample pages
# ---------------------------------------------------------------------------

def next_data_page(payload: dict) -> str:
    return (
        "<html><head><title>otomoto</title></head><body>"
        '<script id="__NEXT_DATA__" type="application/json">'
        f"{json.dumps(payload)}"
        "</script></body></html>"
    )


def otomoto_search_payload(edges: list[dict]) -> dict:
    return {
        "props": {
            "pageProps": {
                "urqlState": {
                    "1234567": {"data": json.dumps({"somethingElse": {"edges": []}})},
                    "7654321": {"data": json.dumps({"advertSearch": {"edges": edges}})},
                }
            }
        }
    }


OTOMOTO_EDGES = [
    {
        "node": {
            "id": "12345",
            "url": "https://www.otomoto.pl/osobowe/oferta/ford-focus-ID6ABC123.html",
            "title": "Ford Focus 1.6 TDCi",
            "createdAt": "2023-10-01T10:00:00Z",
        }
    },
    {
        "node": {
            "id": 67890,
            "url": "https://www.otomoto.pl/osobowe/oferta/volkswagen-golf-ID6DEF456.html",
            "title": "Volkswagen Golf 2.0 TDI",
            "createdAt": "2023-10-02T14:30:00Z",
        }
    },
]


OTOMOTO_ADVERT = {
    "id": "6115734211",
    "title": "Renault  Trafic <b>2.0 dCi</b> L2H1",
    "url": "https://www.otomoto.pl/dostawcze/oferta/renault-trafic-ID6HG4T1.html",
    "createdAt": "2023-09-28T13:11:56Z",
    "price": {"value": "89 900", "currency": "PLN"},
    "description": "<p>Witam, mam do sprzedania Renault Trafic.</p>",
    "seller": {
        "name": "Paweł",
        "id": "1915462",
        "type": "PRIVATE",
        "location": {"address": "Częstochowa, Lisiniec"},
        "featuresBadges": [
            {"code": "registration-date", "label": "Sprzedający na OTOMOTO od 2015"},
        ],
    },
    "details": [
        {"key": "make", "label": "Marka pojazdu", "value": "Renault"},
        {"key": "model", "label": "Model pojazdu", "value": "Trafic"},
        {"key": "rok-produkcji", "label": "Rok produkcji", "value": "2017"},
        {"key": "przebieg-pojazdu", "label": "Przebieg", "value": "150 000 km"},
        {"key": "rodzaj-paliwa", "label": "Rodzaj paliwa", "value": "Diesel"},
        {"key": "skrzynia-biegow", "label": "Skrzynia biegów", "value": "Manualna"},
    ],
    "equipment": [
        {"label": "Audio i multimedia", "values": [{"label": "Interfejs Bluetooth"}, {"label": "Radio"}]},
        {"label": "Komfort i dodatki", "values": [{"label": "Hak"}]},
    ],
    "images": {
        "photos": [
            {"url": "https://img.otomoto.pl/photo1.jpg"},
            {"url": "//img.otomoto.pl/photo2.jpg"},
            {"url": ""},
        ]
    },
}


def otomoto_detail_payload(advert: dict | None = None) -> dict:
    return {"props": {"pageProps": {"advert": advert if advert is not None else OTOMOTO_ADVERT}}}


OLX_ADS = [
    {
        "id": 901,
        "url": "/d/oferta/renault-trafic-ID10abc.html",
        "title": "Renault Trafic 1.6",
        "price": {"regularPrice": {"value": 50000}},
        "user": {"name": "Jan"},
        "params": [
            {"key": "year", "name": "Rok produkcji", "value": "2016"},
            {"key": "milage", "name": "Przebieg", "value": "210 000 km"},
        ],
        "photos": ["https://img.olx.pl/1.jpg"],
    },
]


def olx_page(state: dict, string_encoded: bool = False) -> str:
    encoded = json.dumps(state)
    if string_encoded:
        encoded = json.dumps(encoded)
    return (
        "<html><body><script>"
        f"window.__PRERENDERED_STATE__ = {encoded};"
        "window.__OTHER__ = {};"
        "</script></body></html>"
    )


CSS_SEARCH_HTML = """
<html><body>
<ul class="results">
  <li class="result">
    <a class="offer-link" href="/oferta/renault-trafic-ID77xy.html">link</a>
    <h2>Renault Trafic</h2>
    <span class="date">3 dni temu</span>
  </li>
  <li class="result">
    <h2>No link here</h2>
  </li>
  <li class="result"><span class="date">empty</span></li>
</ul>
</body></html>
"""

CSS_DETAIL_HTML = """
<html><body>
<article class="offer">
  <h1>Opel   Vivaro <i>1.6 CDTI</i></h1>
  <div class="price">45 000 zł</div>
  <div class="description"><p>Stan bardzo dobry.</p></div>
  <dl><dd class="year">2018</dd><dd class="mileage">120 500 km</dd></dl>
  <div class="seller"><span class="name">Auto-Handel</span></div>
  <div class="gallery">
    <img src="https://cdn.example.pl/a.jpg">
    <img data-src="https://cdn.example.pl/b.jpg">
  </div>
</article>
</body></html>
"""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def schema_path() -> Path:
    return FIXTURES / "parser-schema.json"


@pytest.fixture
def search_config_path() -> Path:
    return FIXTURES / "search-config.json"


@pytest.fixture
def parser(schema_path) -> SchemaParser:
    return SchemaParser(schema_path, pln_to_eur_rate=0.23)


@pytest.fixture
def repository(tmp_path):
    repo = VehicleRepository(tmp_path / "db" / "vehicles.db")
    yield repo
    repo.close()


def make_record(**overrides) -> dict:
    """A complete vehicle record ready for ``insert_vehicle``."""
    record = {
        "source": "otomoto",
        "source_id": "1",
        "source_url": "https://www.otomoto.pl/oferta/1",
        "source_title": "Renault Trafic",
        "source_description_html": "<p>Opis</p>",
        "source_parameters": {"Marka pojazdu": "Renault", "Model pojazdu": "Trafic"},
        "source_equipment": {},
        "source_photos": [],
        "title": "Renault Trafic",
        "description": None,
        "features": [],
        "price_pln": 50000.0,
        "price_eur": 11500.0,
        "year": 2017,
        "mileage": 150000,
        "seller_info": {"name": None, "id": None, "type": None, "location": None, "member_since": None},
        "photos": [],
        "status": "new",
    }
    record.update(overrides)
    return record
