"""Decoding of agtype text returned by Apache AGE.

AGE serializes vertices and edges as JSON-like objects followed by a type
annotation::

    {"id": 844424930131969, "label": "Doctor", "properties": {"id": "D1"}}::vertex
    {"id": 1125899906842625, "label": "TREATED", "end_id": 1, "start_id": 2,
     "properties": {}}::edge

The decoder never searches the whole text for a key. Members are located by
walking the object one level at a time with balanced-brace matching, so a
``name`` or ``id`` nested somewhere else cannot leak into the result.
"""

import json
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from .exceptions import AgtypeDecodeError

ANNOTATION_REGEX = re.compile(r"::(vertex|edge|path|numeric)\b")

EDGE_COLUMNS: Tuple[Tuple[str, str, str], ...] = (
    ("source", "edge", "target"),
    ("c0", "c1", "c2"),
)

T = TypeVar("T")


@dataclass
class DecodedVertex:
    internal_id: Optional[int]
    label: Optional[str]
    id: Optional[str]
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DecodedEdge:
    internal_id: Optional[int]
    label: Optional[str]
    start_id: Optional[int]
    end_id: Optional[int]
    properties: Dict[str, Any] = field(default_factory=dict)


def _skip_whitespace(text: str, index: int) -> int:
    while index < len(text) and text[index].isspace():
        index += 1
    return index


def _string_end(text: str, start: int) -> int:
    """Index just past the JSON string starting at ``start``."""
    index = start + 1
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == '"':
            return index + 1
        index += 1
    raise AgtypeDecodeError(f"Unterminated string at offset {start}")


def _value_end(text: str, start: int) -> int:
    """Index just past the value starting at ``start``.

    Objects and arrays are matched by counting braces and brackets outside of
    string literals.
    """
    if start >= len(text):
        raise AgtypeDecodeError("Unexpected end of agtype text")
    char = text[start]
    if char == '"':
        return _string_end(text, start)
    if char in "{[":
        depth = 0
        index = start
        while index < len(text):
            char = text[index]
            if char == '"':
                index = _string_end(text, index)
                continue
            if char in "{[":
                depth += 1
            elif char in "}]":
                depth -= 1
                if depth == 0:
                    return index + 1
            index += 1
        raise AgtypeDecodeError(f"Unbalanced braces at offset {start}")
    index = start
    while index < len(text) and text[index] not in ",}]":
        index += 1
    return index


def _iter_members(text: str, start: int) -> Iterator[Tuple[str, int, int]]:
    """Yield (key, value_start, value_end) for the object opening at ``start``."""
    if start >= len(text) or text[start] != "{":
        raise AgtypeDecodeError("Expected an object")
    index = _skip_whitespace(text, start + 1)
    if index < len(text) and text[index] == "}":
        return
    while index < len(text):
        if text[index] != '"':
            raise AgtypeDecodeError(f"Expected a key at offset {index}")
        key_end = _string_end(text, index)
        key = json.loads(text[index:key_end])
        index = _skip_whitespace(text, key_end)
        if index >= len(text) or text[index] != ":":
            raise AgtypeDecodeError(f"Expected ':' at offset {index}")
        value_start = _skip_whitespace(text, index + 1)
        value_end = _value_end(text, value_start)
        yield key, value_start, value_end
        index = _skip_whitespace(text, value_end)
        # Annotated nested values (e.g. a vertex inside a map) end in ::vertex
        match = ANNOTATION_REGEX.match(text, index)
        if match:
            index = _skip_whitespace(text, match.end())
        if index < len(text) and text[index] == ",":
            index = _skip_whitespace(text, index + 1)
            continue
        if index < len(text) and text[index] == "}":
            return
        raise AgtypeDecodeError(f"Expected ',' or '}}' at offset {index}")
    raise AgtypeDecodeError("Unterminated object")


def _object_start(text: str) -> int:
    if text is None:
        raise AgtypeDecodeError("No agtype text")
    index = _skip_whitespace(text, 0)
    if index >= len(text) or text[index] != "{":
        raise AgtypeDecodeError(f"Not an agtype object: {text[:40]!r}")
    return index


def _top_level_members(text: str) -> Dict[str, Tuple[int, int]]:
    return {
        key: (value_start, value_end)
        for key, value_start, value_end in _iter_members(text, _object_start(text))
    }


def _scalar(raw: str) -> Any:
    try:
        return json.loads(ANNOTATION_REGEX.sub("", raw))
    except ValueError:
        return raw


def _as_string(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _properties_span(text: str) -> Optional[Tuple[int, int]]:
    return _top_level_members(text).get("properties")


def extract_property_value(text: str, key: str) -> Optional[str]:
    """Value of ``properties.<key>`` as a string, or None if absent.

    Only members directly inside the ``properties`` object are considered.
    """
    span = _properties_span(text)
    if span is None or text[span[0]] != "{":
        return None
    for name, value_start, value_end in _iter_members(text, span[0]):
        if name == key:
            return _as_string(_scalar(text[value_start:value_end]))
    return None


def extract_label(text: str) -> Optional[str]:
    span = _top_level_members(text).get("label")
    if span is None:
        return None
    return _as_string(_scalar(text[span[0]:span[1]]))


def extract_internal_id(text: str) -> Optional[int]:
    span = _top_level_members(text).get("id")
    if span is None:
        return None
    return _as_int(_scalar(text[span[0]:span[1]]))


def extract_id(text: str) -> Optional[str]:
    """Natural identifier of a vertex.

    Precedence: ``properties.id``, then ``properties.code``, then the store's
    internal numeric id.
    """
    for key in ("id", "code"):
        value = extract_property_value(text, key)
        if value:
            return value
    internal_id = extract_internal_id(text)
    return str(internal_id) if internal_id is not None else None


def extract_properties(text: str) -> Dict[str, Any]:
    span = _properties_span(text)
    if span is None:
        return {}
    raw = ANNOTATION_REGEX.sub("", text[span[0]:span[1]])
    try:
        properties = json.loads(raw)
    except ValueError as e:
        raise AgtypeDecodeError(f"Malformed properties: {e}") from e
    if not isinstance(properties, dict):
        raise AgtypeDecodeError("properties is not an object")
    return properties


def decode_vertex(text: str) -> DecodedVertex:
    members = _top_level_members(text)

    def _member(name: str) -> Any:
        span = members.get(name)
        return _scalar(text[span[0]:span[1]]) if span else None

    return DecodedVertex(
        internal_id=_as_int(_member("id")),
        label=_as_string(_member("label")),
        id=extract_id(text),
        properties=extract_properties(text),
    )


def decode_edge(text: str) -> DecodedEdge:
    members = _top_level_members(text)

    def _member(name: str) -> Any:
        span = members.get(name)
        return _scalar(text[span[0]:span[1]]) if span else None

    return DecodedEdge(
        internal_id=_as_int(_member("id")),
        label=_as_string(_member("label")),
        start_id=_as_int(_member("start_id")),
        end_id=_as_int(_member("end_id")),
        properties=extract_properties(text),
    )


def parse_agtype(text: Optional[str]) -> Any:
    """Convert agtype text to a Python value.

    Scalars, lists and maps are decoded as JSON once type annotations are
    stripped. Text that is not valid JSON is returned unchanged.
    """
    if text is None:
        return None
    if not isinstance(text, str):
        return text
    return _scalar(ANNOTATION_REGEX.sub("", text).strip())


def agtype_to_str(text: Optional[str]) -> Optional[str]:
    return _as_string(parse_agtype(text))


def read_count(rows: Sequence[Mapping[str, Any]], column: str = "cnt") -> int:
    """First count in a result set, reading ``column`` then ``c``."""
    if not rows:
        return 0
    row = rows[0]
    value = row.get(column, row.get("c"))
    number = parse_agtype(value)
    if isinstance(number, bool) or not isinstance(number, (int, float)):
        return 0
    return int(number)


def edge_row_columns(
    row: Mapping[str, Any]
) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """(source, edge, target) texts of a row, named columns first."""
    for names in EDGE_COLUMNS:
        values = tuple(row.get(name) for name in names)
        if any(value is not None for value in values):
            return values
    return None, None, None


async def count_by_distinct_type(
    list_types: Callable[[], Awaitable[List[str]]],
    count_type: Callable[[str], Awaitable[Optional[int]]],
) -> Dict[str, int]:
    """Per-type counts sorted by type name.

    Emulates GROUP BY: distinct types are listed first, then each is counted
    by its own query. Types whose count cannot be read are left out.
    """
    counts = {}
    for type_name in await list_types():
        if not type_name:
            continue
        count = await count_type(type_name)
        if count is not None:
            counts[type_name] = count
    return dict(sorted(counts.items()))


def fetch_window(limit: int, offset: int = 0) -> int:
    """Rows to request so that ``client_side_paginate`` can apply ``offset``."""
    if limit < 0 or offset < 0:
        raise ValueError("limit and offset must be non-negative")
    return limit + offset


def client_side_paginate(rows: Sequence[T], limit: int, offset: int = 0) -> List[T]:
    """Drop the first ``offset`` rows and keep at most ``limit``."""
    fetch_window(limit, offset)
    return list(rows[offset:offset + limit])
