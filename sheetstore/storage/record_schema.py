"""
Destination table layout and row <-> record conversion.

Header cells carry the canonical field id in brackets (``Dish [DISH]``): the
label is presentation only, the bracket key is what storage and lookups use.
Metadata columns (Record ID, Created At, ...) are located by name, so tables
that were edited by hand or created by older versions keep working as long as
the headers are present somewhere in row 1.
"""

import json
import re
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from sheetstore.core.models import FieldConfig, FormConfig, Record, normalize_language
from sheetstore.observability.logger import get_logger

from .tabular import Table, Workbook, cell_text

logger = get_logger(__name__)

BRACKET_KEY_RE = re.compile(r"^(.*?)\s*\[([^\[\]]+)\]\s*$")

RECORD_ID_HEADER = "Record ID"
CREATED_AT_HEADER = "Created At"
UPDATED_AT_HEADER = "Updated At"
STATUS_HEADER = "Status"
PDF_URL_HEADER = "PDF URL"
DATA_VERSION_HEADER = "Data Version"
LANGUAGE_HEADER = "Language"
TIMESTAMP_HEADER = "Timestamp"

META_HEADERS = [RECORD_ID_HEADER, CREATED_AT_HEADER, UPDATED_AT_HEADER, STATUS_HEADER, PDF_URL_HEADER, DATA_VERSION_HEADER]

_META_ALIASES = {
    "record_id": ("record id", "id"),
    "created_at": ("created at",),
    "updated_at": ("updated at",),
    "status": ("status",),
    "pdf_url": ("pdf url", "pdf link"),
    "data_version": ("data version",),
    "language": ("language",),
    "timestamp": ("timestamp",),
}


def normalize_header_token(raw: Any) -> str:
    return cell_text(raw).strip().lower()


def sanitize_header_cell_text(raw_header: Any) -> str:
    """
    Repair accidental nesting such as ``"Dish [DISH] [Dish [DISH]]"``.
    """
    raw = cell_text(raw_header).strip()
    if not raw.endswith("]]"):
        return raw
    for idx, char in enumerate(raw):
        if char != "[" or idx == 0:
            continue
        outer = raw[:idx].strip()
        inner = raw[idx + 1:-1].strip()
        if "[" in inner and normalize_header_token(outer) == normalize_header_token(inner):
            return outer
    return raw


def parse_header_key(raw_header: Any) -> tuple[str, str | None]:
    """
    Split a header cell into (label, key).

    Returns:
        Label text and the bracket key, or None when the header has no key
    """
    raw = sanitize_header_cell_text(raw_header)
    match = BRACKET_KEY_RE.match(raw)
    if not match:
        return raw, None
    label = match.group(1).strip()
    key = match.group(2).strip()
    return label, (key or None)


def format_header_label_with_id(label: str, field_id: str) -> str:
    """
    Build the ``Label [ID]`` header for a field without double-wrapping.
    """
    raw_label = sanitize_header_cell_text(label)
    id_label, id_key = parse_header_key(field_id)
    key = (id_key or id_label or "").strip()
    if not key:
        return raw_label
    label_text, label_key = parse_header_key(raw_label)
    if label_key and normalize_header_token(label_key) == normalize_header_token(key):
        return f"{label_text or key} [{key}]"
    return f"{(raw_label or key).strip()} [{key}]"


def as_iso(value: Any) -> str | None:
    """Render a timestamp cell as ISO text."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def is_blank_row(cells: list[Any]) -> bool:
    """True when no cell of the row holds any text."""
    return not any(cell_text(c).strip() for c in cells)


def parse_version(value: Any) -> int | None:
    """Parse a data version cell; blanks and garbage read as None."""
    text = cell_text(value).strip()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


class HeaderColumns(BaseModel):
    """
    1-based column positions in a destination table.

    Attributes:
        fields: Field id -> column
        width: Header width (number of columns written per row)
    """

    timestamp: int | None = None
    language: int | None = None
    record_id: int | None = None
    created_at: int | None = None
    updated_at: int | None = None
    status: int | None = None
    pdf_url: int | None = None
    data_version: int | None = None
    fields: dict[str, int] = Field(default_factory=dict)
    width: int = 0


class Destination:
    """A destination table with its resolved header layout."""

    def __init__(self, table: Table, headers: list[str], columns: HeaderColumns):
        self.table = table
        self.headers = headers
        self.columns = columns

    @property
    def name(self) -> str:
        return self.table.name


def _find_meta_column(lowered: list[str], aliases: tuple[str, ...]) -> int | None:
    for alias in aliases:
        for idx, header in enumerate(lowered):
            if header == alias:
                return idx + 1
    return None


def resolve_columns(headers: list[str], form: FormConfig) -> HeaderColumns:
    """
    Resolve metadata and field columns from a header row.

    Fields match on their bracket key first, then on the plain label or id.
    """
    lowered = [normalize_header_token(h) for h in headers]
    columns = HeaderColumns(width=len(headers))
    for attr, aliases in _META_ALIASES.items():
        setattr(columns, attr, _find_meta_column(lowered, aliases))

    keys = [parse_header_key(h)[1] for h in headers]
    for question in form.questions:
        col = None
        for idx, key in enumerate(keys):
            if key and normalize_header_token(key) == normalize_header_token(question.id):
                col = idx + 1
                break
        if col is None:
            candidates = {normalize_header_token(question.id)}
            if question.label:
                candidates.add(normalize_header_token(question.label))
            for idx, header in enumerate(lowered):
                if header in candidates:
                    col = idx + 1
                    break
        if col is not None:
            columns.fields[question.id] = col
    return columns


def ensure_destination(workbook: Workbook, form: FormConfig) -> Destination:
    """
    Get (creating if needed) the destination table and make sure every
    required header is present. Missing headers are appended; existing ones
    are never moved, so data written under an older layout stays addressable.
    """
    table = workbook.get_or_create_table(form.table_name)
    width = table.col_count()
    current = [cell_text(h).strip() for h in table.get_range(1, 1, 1, width)[0]] if width else []
    while current and not current[-1]:
        current.pop()

    headers = list(current)
    lowered = {normalize_header_token(h) for h in headers if h}
    field_keys = {
        normalize_header_token(key)
        for key in (parse_header_key(h)[1] for h in headers)
        if key
    }

    desired: list[tuple[str, set[str]]] = [(LANGUAGE_HEADER, {"language"})]
    for question in form.questions:
        header = format_header_label_with_id(question.label or question.id, question.id)
        aliases = {normalize_header_token(question.id)}
        if question.label:
            aliases.add(normalize_header_token(question.label))
        if normalize_header_token(question.id) in field_keys:
            continue
        desired.append((header, aliases))
    for meta in META_HEADERS:
        desired.append((meta, {normalize_header_token(meta)}))

    added = []
    for header, aliases in desired:
        if lowered & aliases:
            continue
        headers.append(header)
        lowered.add(normalize_header_token(header))
        added.append(header)

    if added:
        table.set_range(1, 1, [headers])
        logger.info(
            "Destination headers updated",
            extra={"table": table.name, "added_headers": added},
        )

    return Destination(table, headers, resolve_columns(headers, form))


def encode_value(question: FieldConfig | None, value: Any) -> Any:
    """Convert a record value into a cell value."""
    if value is None:
        return ""
    if question is not None and question.field_type == "LINE_ITEM_GROUP":
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)
    if question is not None and question.field_type == "DATE" and isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(cell_text(v) for v in value if v is not None)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def decode_value(question: FieldConfig, cell: Any) -> Any:
    """Convert a cell value back into a record value."""
    if question.field_type == "LINE_ITEM_GROUP" and isinstance(cell, str) and cell.strip():
        try:
            return json.loads(cell)
        except json.JSONDecodeError:
            return cell
    if question.field_type == "CHECKBOX":
        if isinstance(cell, (list, tuple)):
            return list(cell)
        text = cell_text(cell).strip()
        return [part.strip() for part in text.split(",") if part.strip()] if text else []
    if cell is None:
        return ""
    return cell


def row_to_record(
    form: FormConfig,
    columns: HeaderColumns,
    row_values: list[Any],
    row_number: int | None = None,
    fallback_id: str | None = None,
) -> Record | None:
    """
    Build a Record from a full-width row.

    Returns:
        The record, or None when the row has no id
    """
    def cell(col: int | None) -> Any:
        if not col or col > len(row_values):
            return ""
        return row_values[col - 1]

    record_id = cell_text(cell(columns.record_id)).strip() or (fallback_id or "")
    if not record_id:
        return None

    values: dict[str, Any] = {}
    for question in form.questions:
        col = columns.fields.get(question.id)
        if not col:
            continue
        values[question.id] = decode_value(question, cell(col))

    status = cell_text(cell(columns.status)).strip()
    pdf_url = cell_text(cell(columns.pdf_url)).strip()
    version = parse_version(cell(columns.data_version))
    return Record(
        id=record_id,
        form_key=form.form_key,
        language=normalize_language(cell(columns.language) or "EN"),
        values=values,
        status=status or None,
        created_at=as_iso(cell(columns.created_at)),
        updated_at=as_iso(cell(columns.updated_at)),
        data_version=version if version is not None else 0,
        pdf_url=pdf_url or None,
        row_number=row_number,
    )


def record_to_row(
    form: FormConfig,
    columns: HeaderColumns,
    record: Record,
    base_row: list[Any] | None = None,
    timestamp: str | None = None,
) -> list[Any]:
    """
    Lay a record out as a full-width row.

    Args:
        base_row: Existing row; cells in columns this layer does not own are kept
        timestamp: Value for the optional Timestamp column

    Returns:
        Row of exactly ``columns.width`` cells
    """
    width = columns.width
    row = list(base_row or [])[:width]
    row.extend([""] * (width - len(row)))

    def put(col: int | None, value: Any) -> None:
        if col:
            row[col - 1] = "" if value is None else value

    put(columns.timestamp, timestamp)
    put(columns.language, record.language)
    put(columns.record_id, record.id)
    put(columns.created_at, record.created_at)
    put(columns.updated_at, record.updated_at)
    put(columns.status, record.status)
    put(columns.pdf_url, record.pdf_url)
    put(columns.data_version, record.data_version)
    for question in form.questions:
        col = columns.fields.get(question.id)
        if col and question.id in record.values:
            put(col, encode_value(question, record.values[question.id]))
    return row


def volatile_column_numbers(destination: Destination, form: FormConfig) -> list[int]:
    """
    Columns hashed by the etag fingerprint fallback: record id, updated at
    and any header configured in ``form.volatile_columns``.
    """
    columns = destination.columns
    numbers = [c for c in (columns.record_id, columns.updated_at) if c]
    wanted = {normalize_header_token(h) for h in form.volatile_columns}
    for idx, header in enumerate(destination.headers):
        if normalize_header_token(header) in wanted:
            numbers.append(idx + 1)
    return sorted(set(numbers))
