import pytest

from car_listing_analyzer.errors import ConfigError
from car_listing_analyzer.path_resolver import FilterSegment, KeySegment, parse_path, resolve

PAYLOAD = {
    "props": {"pageProps": {"advert": {"title": "Renault Trafic", "price": {"value": 0}}}},
    "details": [
        {"label": "Rok produkcji", "value": "2017"},
        {"label": "Przebieg", "value": "150 000 km"},
        {"label": "v1.5", "value": "dotted"},
        {"code": 7, "value": "numeric"},
    ],
    "photos": [{"url": "a.jpg"}, {"url": "b.jpg"}],
}


def test_parse_plain_and_filter_segments():
    assert parse_path("a.b[label=Rok produkcji].value") == [
        KeySegment("a"),
        FilterSegment("b", "label", "Rok produkcji"),
        KeySegment("value"),
    ]


def test_dots_inside_brackets_belong_to_the_filter():
    assert parse_path("details[label=v1.5].value") == [
        FilterSegment("details", "label", "v1.5"),
        KeySegment("value"),
    ]
    assert resolve(PAYLOAD, "details[label=v1.5].value") == "dotted"


@pytest.mark.parametrize("path", ["", "a..b", "a[b=c", "a]b", "a[=c]", "a[b]"])
def test_malformed_paths_raise_config_error(path):
    with pytest.raises(ConfigError):
        parse_path(path)


def test_resolve_nested_keys():
    assert resolve(PAYLOAD, "props.pageProps.advert.title") == "Renault Trafic"


def test_falsy_values_are_returned_not_treated_as_missing():
    assert resolve(PAYLOAD, "props.pageProps.advert.price.value") == 0


def test_array_filter_selects_first_match():
    assert resolve(PAYLOAD, "details[label=Przebieg].value") == "150 000 km"


def test_array_filter_compares_as_strings():
    assert resolve(PAYLOAD, "details[code=7].value") == "numeric"


def test_integer_segment_indexes_lists():
    assert resolve(PAYLOAD, "photos.1.url") == "b.jpg"
    assert resolve(PAYLOAD, "photos.5.url") is None


@pytest.mark.parametrize(
    "path",
    [
        "props.missing.title",
        "details[label=Moc].value",
        "props.pageProps.advert.title.deeper",
        "props[label=x].value",
    ],
)
def test_missing_steps_yield_none(path):
    assert resolve(PAYLOAD, path) is None


def test_resolve_on_none_root():
    assert resolve(None, "a.b") is None
