"""Parsers turning raw JSON, XML and delimited payloads into Python documents."""

from __future__ import annotations

import csv
import io
import json
import re
import xml.etree.ElementTree as ET
from typing import Any

from ..errors import ConnectionManagerError, ErrorKind

_JSON_PATH_TOKEN = re.compile(r"\.(?P<name>[^.\[\]]+)|\[(?P<index>-?\d+|\*|'[^']*'|\"[^\"]*\")\]")
_NUMBER = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?$")

TEXT_KEY = "_"


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ConnectionManagerError(ErrorKind.PARSE_ERROR, f"invalid JSON: {exc}") from exc


def select_json_path(document: Any, path: str) -> list[Any]:
    """Evaluate the ``$``, ``.key``, ``[index]``, ``['key']`` and ``[*]`` subset of JSONPath."""

    expression = path.strip()
    if expression.startswith("$"):
        expression = expression[1:]
    nodes: list[Any] = [document]
    position = 0
    while position < len(expression):
        match = _JSON_PATH_TOKEN.match(expression, position)
        if match is None:
            raise ConnectionManagerError(ErrorKind.PARSE_ERROR, f"unsupported jsonPath '{path}'")
        position = match.end()
        name, index = match.group("name"), match.group("index")
        selected: list[Any] = []
        for node in nodes:
            if name == "*" or index == "*":
                if isinstance(node, dict):
                    selected.extend(node.values())
                elif isinstance(node, list):
                    selected.extend(node)
            elif name is not None or (index and index[0] in "'\""):
                key = name if name is not None else index[1:-1]
                if isinstance(node, dict) and key in node:
                    selected.append(node[key])
            elif isinstance(node, list):
                offset = int(index)
                if -len(node) <= offset < len(node):
                    selected.append(node[offset])
        nodes = selected
    return nodes


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


def element_to_value(element: ET.Element) -> Any:
    """Convert an element: text-only elements become strings, others dicts.

    Attributes are merged into the element's dict, repeated children become
    lists, and mixed text is kept under ``"_"``.
    """

    children = list(element)
    text = (element.text or "").strip()
    if not children and not element.attrib:
        return text
    value: dict[str, Any] = {local_name(key): attr for key, attr in element.attrib.items()}
    for child in children:
        key = local_name(child.tag)
        converted = element_to_value(child)
        if key in value:
            existing = value[key]
            if isinstance(existing, list):
                existing.append(converted)
            else:
                value[key] = [existing, converted]
        else:
            value[key] = converted
    if text:
        value[TEXT_KEY] = text
    return value


def parse_xml_element(text: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as exc:
        raise ConnectionManagerError(ErrorKind.PARSE_ERROR, f"invalid XML: {exc}") from exc


def parse_xml(text: str, *, xpath: str | None = None) -> Any:
    """Parse XML into ``{root_tag: value}``, or a list of matches when ``xpath`` is given."""

    root = parse_xml_element(text)
    if xpath:
        return [element_to_value(element) for element in select_xpath(root, xpath)]
    return {local_name(root.tag): element_to_value(root)}


def select_xpath(root: ET.Element, xpath: str) -> list[ET.Element]:
    """Evaluate an ElementTree path, accepting absolute ``/root/...`` and ``//tag`` forms."""

    expression = xpath.strip()
    try:
        if expression.startswith("//"):
            return root.findall("." + expression)
        if expression.startswith("/"):
            head, _, rest = expression[1:].partition("/")
            if local_name(root.tag) != head and root.tag != head:
                return []
            return [root] if not rest else root.findall("./" + rest)
        return root.findall(expression)
    except SyntaxError as exc:
        raise ConnectionManagerError(ErrorKind.PARSE_ERROR, f"unsupported xpath '{xpath}': {exc}") from exc


def coerce_scalar(value: str) -> Any:
    """Best-effort numeric/boolean/null typing for delimited values."""

    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered == "null":
        return None
    if _NUMBER.match(value):
        if "." in value or "e" in lowered:
            return float(value)
        return int(value)
    return value


def parse_delimited(
    text: str,
    *,
    delimiter: str = ",",
    headers: bool = True,
    trim: bool = True,
    dynamic_typing: bool = False,
) -> list[Any]:
    """Parse CSV/TSV text. Empty lines are always skipped."""

    try:
        rows = [row for row in csv.reader(io.StringIO(text), delimiter=delimiter) if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        raise ConnectionManagerError(ErrorKind.PARSE_ERROR, f"invalid delimited data: {exc}") from exc

    def _cell(value: str) -> Any:
        value = value.strip() if trim else value
        return coerce_scalar(value) if dynamic_typing else value

    if not headers:
        return [[_cell(value) for value in row] for row in rows]
    if not rows:
        return []
    columns = [column.strip() if trim else column for column in rows[0]]
    records: list[Any] = []
    for row in rows[1:]:
        records.append({column: _cell(row[index]) if index < len(row) else None for index, column in enumerate(columns)})
    return records


__all__ = [
    "coerce_scalar",
    "element_to_value",
    "local_name",
    "parse_delimited",
    "parse_json",
    "parse_xml",
    "parse_xml_element",
    "select_json_path",
    "select_xpath",
]
