"""Helpers for turning Cypher text into Apache AGE SQL statements.

AGE runs Cypher through ``ag_catalog.cypher(graph, $$ query $$)`` and needs an
explicit column definition list for the result. Parameters are embedded as
escaped literals because the SQL function takes the query as a constant.
"""

import math
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

IDENTIFIER_REGEX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PARAMETER_REGEX = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")
ALIAS_REGEX = re.compile(r"\s+AS\s+`?([A-Za-z_][A-Za-z0-9_]*)`?\s*$", re.IGNORECASE)
DISTINCT_REGEX = re.compile(r"^\s*DISTINCT\s+", re.IGNORECASE)

_RETURN_END_KEYWORDS = ("ORDER", "SKIP", "LIMIT", "UNION")


def is_identifier(name: str) -> bool:
    return bool(name) and IDENTIFIER_REGEX.match(name) is not None


def escape_str(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def format_cypher_value(value: Any) -> str:
    """Render a Python value as a Cypher literal."""
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return format_cypher_value(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"Cannot embed non-finite float {value!r} in a query")
        return repr(value)
    if isinstance(value, (datetime, date)):
        return f"'{value.isoformat()}'"
    if isinstance(value, str):
        return f"'{escape_str(value)}'"
    if isinstance(value, Mapping):
        return _format_properties(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return "[" + ", ".join(format_cypher_value(item) for item in items) + "]"
    raise TypeError(f"Unsupported Cypher parameter type: {type(value).__name__}")


def _format_properties(properties: Mapping[str, Any]) -> str:
    props = []
    for key, value in properties.items():
        name = key if is_identifier(key) else f"`{key.replace('`', '``')}`"
        props.append(f"{name}: {format_cypher_value(value)}")
    return "{" + ", ".join(props) + "}"


def embed_parameters(query: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Replace ``$name`` placeholders with literals in a single pass.

    Substituted text is never rescanned, so parameter values that contain
    ``$`` cannot be mistaken for placeholders.
    """
    if not params:
        return query

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in params:
            raise ValueError(f"Missing query parameter: ${name}")
        return format_cypher_value(params[name])

    return PARAMETER_REGEX.sub(_substitute, query)


def _scan_top_level(text: str):
    """Yield (index, char) for characters outside string literals and brackets."""
    depth = 0
    quote = None
    escaped = False
    for index, char in enumerate(text):
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in ("'", '"', "`"):
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif depth == 0:
            yield index, char


def _find_keyword(text: str, keyword: str, start: int = 0) -> List[int]:
    """Positions of a standalone keyword at the top level of ``text``."""
    positions = []
    size = len(keyword)
    upper = text.upper()
    for index, _ in _scan_top_level(text):
        if index < start or upper[index:index + size] != keyword:
            continue
        before = text[index - 1] if index > 0 else " "
        after = text[index + size] if index + size < len(text) else " "
        if not (before.isalnum() or before == "_") and not (after.isalnum() or after == "_"):
            positions.append(index)
    return positions


def _split_top_level(text: str) -> List[str]:
    parts = []
    last = 0
    for index, char in _scan_top_level(text):
        if char == ",":
            parts.append(text[last:index])
            last = index + 1
    parts.append(text[last:])
    return [part.strip() for part in parts if part.strip()]


def return_columns(query: str) -> List[str]:
    """Derive AGE result column names from the final RETURN clause.

    Aliased items keep their alias. Unaliased items are named ``c`` when the
    clause has one item and ``c0``..``cN`` otherwise. Queries without RETURN
    get a single ``c`` column.
    """
    positions = _find_keyword(query, "RETURN")
    if not positions:
        return ["c"]
    start = positions[-1] + len("RETURN")
    end = len(query)
    for keyword in _RETURN_END_KEYWORDS:
        found = _find_keyword(query, keyword, start)
        if found:
            end = min(end, found[0])
    clause = DISTINCT_REGEX.sub("", query[start:end])
    items = _split_top_level(clause)
    if not items:
        return ["c"]

    columns = []
    for index, item in enumerate(items):
        alias = ALIAS_REGEX.search(item)
        if alias:
            columns.append(alias.group(1))
        elif len(items) == 1:
            columns.append("c")
        else:
            columns.append(f"c{index}")
    return columns


def _dollar_tag(query: str) -> str:
    tag = "$cypher$"
    counter = 0
    while tag in query:
        counter += 1
        tag = f"$cypher{counter}$"
    return tag


def build_cypher_sql(graph_name: str, query: str) -> str:
    """Wrap a Cypher query in AGE's ``cypher()`` SQL function."""
    if not is_identifier(graph_name):
        raise ValueError(f"Invalid graph name: {graph_name!r}")
    columns = ", ".join(f'"{name}" agtype' for name in return_columns(query))
    tag = _dollar_tag(query)
    return (
        f"SELECT * FROM ag_catalog.cypher('{graph_name}', {tag} {query.strip()} {tag}) "
        f"AS ({columns})"
    )
