"""Field extraction from rendered result pages.

The browser driver never hands live page handles to the parsing code: it
serializes the rendered DOM to HTML and this module parses the snapshot
with lxml. Two table shapes are recognised:

- label/value rows, where the first cell names the field
  (``<tr><td>Logradouro:</td><td>Rua X</td></tr>``)
- header-keyed tables, where a header row names the columns and each
  following row is one address

Field names are resolved through a label mapping (see
CollectorSettings.labels): a cell whose lower-cased text contains a known
label maps to that label's canonical field.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from lxml import etree, html
from lxml.html import HtmlElement

from cepcollector.common.exceptions import MalformedResultException
from cepcollector.data_types import RawFields

MIN_HEADER_FIELDS = 3


def parse_document(content: str, url: str = "") -> HtmlElement:
    """Parse an HTML snapshot.

    Raises:
        MalformedResultException: If the snapshot is empty or not HTML.
    """
    if not content or not content.strip():
        raise MalformedResultException("Empty page snapshot", url)
    try:
        return html.fromstring(content)
    except (etree.ParserError, ValueError) as e:
        raise MalformedResultException(
            f"Could not parse page snapshot: {e}", url
        ) from e


def cell_text(cell: HtmlElement) -> str:
    """Text content of a cell with whitespace runs collapsed."""
    return " ".join(cell.text_content().split())


def match_label(text: str, labels: Mapping[str, str]) -> str | None:
    """Return the canonical field for a label cell, or None."""
    lowered = text.lower()
    for label, field_name in labels.items():
        if label in lowered:
            return field_name
    return None


def _cells(row: HtmlElement) -> list[HtmlElement]:
    return row.xpath("./td | ./th")


def _header_columns(
    row: HtmlElement, labels: Mapping[str, str]
) -> list[str | None] | None:
    """Map a row's cells to fields if it looks like a header row.

    A header names at least three distinct fields and holds no other text,
    so a two-cell label/value row is never mistaken for one.
    """
    cells = _cells(row)
    columns = [match_label(cell_text(cell), labels) for cell in cells]
    texts = [cell_text(cell) for cell in cells]
    matched = [c for c in columns if c is not None]
    if len(matched) < MIN_HEADER_FIELDS or len(set(matched)) != len(matched):
        return None
    if any(col is None and text for col, text in zip(columns, texts)):
        return None
    return columns


def extract_table_rows(
    tree: HtmlElement, labels: Mapping[str, str]
) -> list[RawFields]:
    """Extract one dict per data row of every header-keyed table."""
    rows: list[RawFields] = []
    for table in tree.iter("table"):
        columns: list[str | None] | None = None
        for row in table.iter("tr"):
            if columns is None:
                columns = _header_columns(row, labels)
                continue
            fields: RawFields = {}
            for field_name, cell in zip(columns, _cells(row)):
                value = cell_text(cell)
                if field_name and value:
                    fields[field_name] = value
            if fields:
                rows.append(fields)
    return rows


def extract_labeled_fields(
    tree: HtmlElement, labels: Mapping[str, str]
) -> RawFields:
    """Collect label/value pairs from every two-or-more-cell table row.

    The first occurrence of a field wins.
    """
    fields: RawFields = {}
    for row in tree.iter("tr"):
        cells = _cells(row)
        if len(cells) < 2:
            continue
        label = cell_text(cells[0])
        value = cell_text(cells[1])
        if not label or not value:
            continue
        field_name = match_label(label, labels)
        if field_name and field_name not in fields:
            fields[field_name] = value
    return fields


def extract_positional_rows(
    tree: HtmlElement, columns: Sequence[str]
) -> list[RawFields]:
    """Map data rows to fields by column position.

    Rows with fewer cells than *columns*, or made only of header cells,
    are skipped. An empty column name skips that cell.
    """
    rows: list[RawFields] = []
    for row in tree.iter("tr"):
        cells = row.xpath("./td")
        if len(cells) < len(columns):
            continue
        fields = {
            name: cell_text(cell)
            for name, cell in zip(columns, cells)
            if name and cell_text(cell)
        }
        if fields:
            rows.append(fields)
    return rows


def has_street_and_city(fields: Mapping[str, str]) -> bool:
    return bool(fields.get("street")) and bool(fields.get("city"))


def extract_address(
    content: str, labels: Mapping[str, str], url: str = ""
) -> RawFields:
    """Extract the single address shown on a postal-code result page.

    A header-keyed result row is preferred; otherwise label/value rows are
    scanned. Returns an empty dict when neither yields anything.
    """
    tree = parse_document(content, url)
    for fields in extract_table_rows(tree, labels):
        if has_street_and_city(fields):
            return fields
    return extract_labeled_fields(tree, labels)


def extract_address_list(
    content: str,
    labels: Mapping[str, str],
    columns: Sequence[str],
    url: str = "",
) -> list[RawFields]:
    """Extract every address listed on a locality result page."""
    tree = parse_document(content, url)
    rows = extract_table_rows(tree, labels)
    if not rows:
        rows = extract_positional_rows(tree, columns)
    return [fields for fields in rows if has_street_and_city(fields)]
