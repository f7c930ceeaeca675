"""Dotted-path lookups into nested JSON payloads.

Parser schemas address values inside a page's embedded JSON with paths
such as::

    props.pageProps.advert.title
    details[label=Rok produkcji].value
    seller.featuresBadges[code=registration-date].label

A path is a dot-separated list of segments.  A segment is either a plain
key or an *array filter* ``array[prop=value]`` that selects the first
element of ``array`` whose ``prop`` equals the literal ``value`` (compared
as strings).  Dots inside the brackets belong to the filter literal.

Resolution never raises on missing data: any absent step yields ``None``.
"""

from __future__ import annotations

import re
from typing import Any, NamedTuple, Union

from car_listing_analyzer.errors import ConfigError


class KeySegment(NamedTuple):
    name: str


class FilterSegment(NamedTuple):
    array: str
    prop: str
    value: str


Segment = Union[KeySegment, FilterSegment]

_FILTER_RE = re.compile(r"^([^\[\]=]+)\[([^\[\]=]+)=(.+)\]$")


def _split_path(path: str) -> list[str]:
    """Split *path* on dots that are not inside ``[...]``."""
    parts: list[str] = []
    buf: list[str] = []
    depth = 0
    for ch in path:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth < 0:
                raise ConfigError(f"Unbalanced ']' in path: {path!r}")
        if ch == "." and depth == 0:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    if depth != 0:
        raise ConfigError(f"Unbalanced '[' in path: {path!r}")
    parts.append("".join(buf))
    return parts


def parse_path(path: str) -> list[Segment]:
    """Parse a path expression into key / array-filter segments."""
    if not path:
        raise ConfigError("Empty path expression")
    segments: list[Segment] = []
    for raw in _split_path(path):
        if not raw:
            raise ConfigError(f"Empty segment in path: {path!r}")
        m = _FILTER_RE.match(raw)
        if m:
            segments.append(FilterSegment(m.group(1), m.group(2), m.group(3)))
        elif "[" in raw or "]" in raw:
            raise ConfigError(f"Malformed array filter {raw!r} in path: {path!r}")
        else:
            segments.append(KeySegment(raw))
    return segments


def _step(current: Any, segment: Segment) -> Any:
    if isinstance(segment, FilterSegment):
        array = current.get(segment.array) if isinstance(current, dict) else None
        if not isinstance(array, list):
            return None
        for element in array:
            if isinstance(element, dict) and _literal(element.get(segment.prop)) == segment.value:
                return element
        return None

    if isinstance(current, dict):
        return current.get(segment.name)
    if isinstance(current, list) and segment.name.isdigit():
        index = int(segment.name)
        return current[index] if index < len(current) else None
    return None


def _literal(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve(root: Any, path: str) -> Any:
    """Return the value at *path* inside *root*, or ``None`` if any step is missing."""
    current = root
    for segment in parse_path(path):
        if current is None:
            return None
        current = _step(current, segment)
    return current
