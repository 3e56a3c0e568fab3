import csv
import html
import io
import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import pandas as pd
from recordexport.core.exceptions import UnsupportedExportFormatError
from recordexport.core.logging_config import logger
from recordexport.schemas.export import ExportFormat, ExportOptions
from recordexport.schemas.field import FieldMapping, FieldType


MIME_TYPES = {
    ExportFormat.csv: "text/csv",
    ExportFormat.json: "application/json",
    ExportFormat.xlsx: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

EXPORT_VERSION = "1.0"

# Encodes transformed rows into a binary workbook
XlsxEncoder = Callable[[List[Dict[str, Any]], List[FieldMapping], ExportOptions], bytes]

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def mime_type(export_format: ExportFormat) -> str:
    try:
        return MIME_TYPES[ExportFormat(export_format)]
    except (KeyError, ValueError):
        raise UnsupportedExportFormatError(str(export_format))


def get_nested_value(record: Any, path: str) -> Any:
    """Resolve a dotted key against nested dicts, None when any segment is missing"""
    current = record
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def strip_html(value: str) -> str:
    text = _TAG_PATTERN.sub(" ", value)
    return _WHITESPACE_PATTERN.sub(" ", html.unescape(text)).strip()


def _describe_item(item: Any) -> str:
    if isinstance(item, dict):
        for attr in ("name", "title", "label", "id"):
            if item.get(attr):
                return str(item[attr])
        return json.dumps(item, separators=(",", ":"))
    return str(item)


def _describe_user(user: Any) -> str:
    if isinstance(user, str):
        return user
    if isinstance(user, dict):
        for attr in ("name", "email", "id", "_id"):
            if user.get(attr):
                return str(user[attr])
        return "Unknown User"
    return str(user)


def format_value(value: Any, field_type: FieldType, options: Optional[ExportOptions] = None) -> Any:
    """
    Format a raw value for export according to its field type.

    Args:
        value: Raw record value
        field_type: Field type of the column
        options: Export options (date format)

    Returns:
        Export-ready value; missing values become an empty string
    """
    options = options or ExportOptions()
    if value is None:
        return ""

    if field_type == FieldType.date:
        if isinstance(value, (str, datetime)):
            try:
                return pd.to_datetime(value).strftime(options.date_format)
            except (ValueError, TypeError):
                return value
        return value

    if field_type == FieldType.boolean:
        if isinstance(value, bool):
            return "Yes" if value else ""
        return value

    if field_type == FieldType.array:
        if isinstance(value, list):
            return ", ".join(_describe_item(item) for item in value)
        return value

    if field_type == FieldType.object:
        if isinstance(value, dict):
            return json.dumps(value, separators=(",", ":")) if value else ""
        return value

    if field_type == FieldType.number:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            return value
        return int(number) if number.is_integer() else number

    if field_type == FieldType.richtext:
        if isinstance(value, str):
            return strip_html(value)
        return str(value)

    if field_type == FieldType.rating:
        try:
            rating = float(value)
        except (TypeError, ValueError):
            return value
        if rating.is_integer() and 1 <= rating <= 5:
            stars = int(rating)
            return f"{stars} {'★' * stars}{'☆' * (5 - stars)}"
        return value

    if field_type == FieldType.user:
        if isinstance(value, (str, dict)):
            return _describe_user(value)
        return value

    if field_type == FieldType.users:
        if isinstance(value, list):
            return ", ".join(_describe_user(user) for user in value)
        return value

    return str(value)


def active_fields(fields: List[FieldMapping]) -> List[FieldMapping]:
    return [field for field in fields if field.include]


def column_labels(fields: List[FieldMapping]) -> List[str]:
    """
    Output column names for the included fields.

    A label already taken by an earlier column is suffixed with the field key,
    so a custom field named like a standard field keeps its own column.
    """
    labels: List[str] = []
    for field in active_fields(fields):
        label = field.label
        if label in labels:
            label = f"{field.label} ({field.key})"
        labels.append(label)
    return labels


def transform_records(
    records: List[Any],
    fields: List[FieldMapping],
    options: Optional[ExportOptions] = None,
) -> List[Dict[str, Any]]:
    """Project records onto the included fields, keyed by their column label"""
    columns = list(zip(column_labels(fields), active_fields(fields)))
    return [
        {label: format_value(get_nested_value(record, field.key), field.type, options) for label, field in columns}
        for record in records
    ]


def generate_csv(
    rows: List[Dict[str, Any]],
    fields: List[FieldMapping],
    options: Optional[ExportOptions] = None,
) -> str:
    """
    Render transformed rows as CSV.

    Values containing a comma, quote or line break are quoted and embedded
    quotes doubled, everything else is written bare.
    """
    options = options or ExportOptions()
    columns = column_labels(fields)

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    if options.include_headers:
        writer.writerow(columns)
    for row in rows:
        writer.writerow(["" if row.get(column) is None else row.get(column) for column in columns])
    return buffer.getvalue()


def generate_json(rows: List[Dict[str, Any]], options: Optional[ExportOptions] = None) -> str:
    options = options or ExportOptions()
    document = {
        "exportInfo": {
            "exportedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "timezone": options.timezone or "UTC",
            "totalRecords": len(rows),
            "version": EXPORT_VERSION,
        },
        "data": rows,
    }
    return json.dumps(document, indent=2, ensure_ascii=False, default=str)


def pandas_xlsx_encoder(
    rows: List[Dict[str, Any]],
    fields: List[FieldMapping],
    options: ExportOptions,
) -> bytes:
    """Write an 'Export Data' sheet plus an 'Export Info' sheet with pandas/openpyxl"""
    columns = active_fields(fields)
    labels = column_labels(fields)
    data_frame = pd.DataFrame(rows, columns=labels)

    info_rows = [
        ["Export Information", ""],
        ["Exported At", datetime.now(timezone.utc).isoformat()],
        ["Timezone", options.timezone or "UTC"],
        ["Total Records", len(rows)],
        ["Fields Exported", len(columns)],
        ["", ""],
        ["Field Mappings", ""],
        *[[label, field.key] for label, field in zip(labels, columns)],
    ]
    info_frame = pd.DataFrame(info_rows)

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        data_frame.to_excel(writer, sheet_name="Export Data", index=False, header=options.include_headers)
        info_frame.to_excel(writer, sheet_name="Export Info", index=False, header=False)
    return buffer.getvalue()


def generate_xlsx(
    rows: List[Dict[str, Any]],
    fields: List[FieldMapping],
    options: Optional[ExportOptions] = None,
    encoder: Optional[XlsxEncoder] = None,
) -> bytes:
    """
    Render a spreadsheet with the given encoder.

    Without an encoder the rows are written as JSON text behind a leading
    comment line explaining the fallback.
    """
    options = options or ExportOptions()
    if encoder is not None:
        return encoder(rows, fields, options)

    logger.warning("No spreadsheet encoder configured, falling back to annotated JSON")
    note = "// Excel encoder unavailable: spreadsheet export written as JSON\n"
    return (note + generate_json(rows, options)).encode("utf-8")


def render_export(
    rows: List[Dict[str, Any]],
    fields: List[FieldMapping],
    export_format: ExportFormat,
    options: Optional[ExportOptions] = None,
    xlsx_encoder: Optional[XlsxEncoder] = None,
) -> bytes:
    if export_format == ExportFormat.csv:
        return generate_csv(rows, fields, options).encode("utf-8")
    if export_format == ExportFormat.json:
        return generate_json(rows, options).encode("utf-8")
    if export_format == ExportFormat.xlsx:
        return generate_xlsx(rows, fields, options, xlsx_encoder)
    raise UnsupportedExportFormatError(str(export_format))


def build_export_filename(
    entity_type: str,
    export_format: ExportFormat,
    tenant_slug: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """<tenant>_<entity>_export_<yyyy-MM-dd>_<HH-mm>.<ext>"""
    now = now or datetime.now()
    tenant = tenant_slug or "default"
    return f"{tenant}_{entity_type}_export_{now.strftime('%Y-%m-%d')}_{now.strftime('%H-%M')}.{ExportFormat(export_format).value}"
