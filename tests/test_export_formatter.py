import io
import json
from datetime import datetime

import pandas as pd
import pytest

from recordexport.core.exceptions import UnsupportedExportFormatError
from recordexport.schemas.export import ExportFormat, ExportOptions
from recordexport.schemas.field import FieldMapping, FieldType
from recordexport.services.export_formatter import (
    build_export_filename,
    format_value,
    generate_csv,
    generate_json,
    generate_xlsx,
    get_nested_value,
    mime_type,
    pandas_xlsx_encoder,
    render_export,
    transform_records,
)


def _field(key, field_type=FieldType.string, include=True, label=None, order=0):
    return FieldMapping(key=key, label=label or key, type=field_type, include=include, order=order, width=150)


def test_csv_quotes_values_containing_commas():
    fields = [_field("a", FieldType.number), _field("b")]
    rows = transform_records([{"a": 1, "b": "x,y"}], fields)

    lines = generate_csv(rows, fields).splitlines()

    assert lines == ["a,b", '1,"x,y"']


def test_csv_doubles_embedded_quotes_and_quotes_newlines():
    fields = [_field("note")]
    csv_text = generate_csv([{"note": 'say "hi"'}, {"note": "two\nlines"}], fields)

    assert csv_text == 'note\r\n"say ""hi"""\r\n"two\nlines"\r\n'


def test_csv_without_headers_and_excluded_fields():
    fields = [_field("a"), _field("secret", include=False)]
    rows = transform_records([{"a": "1", "secret": "x"}], fields)

    assert generate_csv(rows, fields, ExportOptions(include_headers=False)) == "1\r\n"


def test_transform_uses_labels_and_nested_keys():
    fields = [_field("owner.name", label="Owner"), _field("custom.Tier", label="Tier")]
    rows = transform_records([{"owner": {"name": "Ada"}, "custom": {"Tier": "Gold"}}, {}], fields)

    assert rows == [{"Owner": "Ada", "Tier": "Gold"}, {"Owner": "", "Tier": ""}]


def test_get_nested_value():
    record = {"a": {"b": {"c": 3}}, "list": [1]}
    assert get_nested_value(record, "a.b.c") == 3
    assert get_nested_value(record, "a.x") is None
    assert get_nested_value(record, "list.0") is None


@pytest.mark.parametrize("value, field_type, expected", [
    (None, FieldType.string, ""),
    ("2024-03-05T10:00:00Z", FieldType.date, "2024-03-05"),
    (True, FieldType.boolean, "Yes"),
    (False, FieldType.boolean, ""),
    ([{"name": "A"}, {"title": "B"}, {"id": 7}, "c"], FieldType.array, "A, B, 7, c"),
    ({}, FieldType.object, ""),
    ({"k": 1}, FieldType.object, '{"k":1}'),
    ("42", FieldType.number, 42),
    ("4.5", FieldType.number, 4.5),
    ("n/a", FieldType.number, "n/a"),
    ("<p>Hello <b>world</b></p>", FieldType.richtext, "Hello world"),
    (3, FieldType.rating, "3 ★★★☆☆"),
    (9, FieldType.rating, 9),
    ({"email": "ada@example.com"}, FieldType.user, "ada@example.com"),
    ([{"name": "Ada"}, "bob"], FieldType.users, "Ada, bob"),
    (12, FieldType.string, "12"),
])
def test_format_value(value, field_type, expected):
    assert format_value(value, field_type) == expected


def test_date_format_option():
    options = ExportOptions(date_format="%d/%m/%Y")
    assert format_value("2024-03-05T10:00:00Z", FieldType.date, options) == "05/03/2024"
    assert format_value("not a date", FieldType.date, options) == "not a date"


def test_json_document_shape():
    document = json.loads(generate_json([{"Name": "Acme"}], ExportOptions(timezone="Europe/Oslo")))

    assert document["data"] == [{"Name": "Acme"}]
    assert document["exportInfo"]["totalRecords"] == 1
    assert document["exportInfo"]["timezone"] == "Europe/Oslo"
    assert document["exportInfo"]["version"] == "1.0"


def test_xlsx_without_encoder_falls_back_to_annotated_json():
    content = generate_xlsx([{"Name": "Acme"}], [_field("Name")]).decode("utf-8")

    first_line, rest = content.split("\n", 1)
    assert first_line.startswith("// Excel encoder unavailable")
    assert json.loads(rest)["data"] == [{"Name": "Acme"}]


def test_xlsx_uses_injected_encoder():
    calls = []

    def encoder(rows, fields, options):
        calls.append(rows)
        return b"PK-workbook"

    assert render_export([{"Name": "Acme"}], [_field("Name")], ExportFormat.xlsx, xlsx_encoder=encoder) == b"PK-workbook"
    assert calls == [[{"Name": "Acme"}]]


def test_filename_pattern():
    now = datetime(2024, 3, 5, 9, 7)
    assert build_export_filename("company", ExportFormat.csv, "acme", now) == "acme_company_export_2024-03-05_09-07.csv"


def test_mime_types():
    assert mime_type(ExportFormat.csv) == "text/csv"
    assert mime_type("json") == "application/json"
    with pytest.raises(UnsupportedExportFormatError):
        mime_type("pdf")


def test_columns_sharing_a_label_stay_separate():
    fields = [_field("status", label="Status"), _field("custom.Status", label="Status", order=1)]
    rows = transform_records([{"status": "open", "custom": {"Status": "Green"}}], fields)

    assert rows == [{"Status": "open", "Status (custom.Status)": "Green"}]
    assert generate_csv(rows, fields).splitlines() == ["Status,Status (custom.Status)", "open,Green"]
    assert json.loads(generate_json(rows))["data"] == [{"Status": "open", "Status (custom.Status)": "Green"}]


def test_pandas_encoder_writes_data_and_info_sheets():
    fields = [_field("name", label="Name"), _field("mrr", FieldType.number, label="MRR", order=1), _field("secret", include=False)]
    rows = transform_records([{"name": "Acme", "mrr": 120, "secret": "x"}, {"name": "Globex", "mrr": 80}], fields)

    content = pandas_xlsx_encoder(rows, fields, ExportOptions())

    assert content[:2] == b"PK"
    sheets = pd.read_excel(io.BytesIO(content), sheet_name=None)
    assert list(sheets) == ["Export Data", "Export Info"]
    data = sheets["Export Data"]
    assert list(data.columns) == ["Name", "MRR"]
    assert data.values.tolist() == [["Acme", 120], ["Globex", 80]]

    info = pd.read_excel(io.BytesIO(content), sheet_name="Export Info", header=None)
    details = {row[0]: row[1] for row in info.values.tolist() if isinstance(row[0], str)}
    assert details["Total Records"] == 2
    assert details["Fields Exported"] == 2
    assert details["MRR"] == "mrr"


def test_pandas_encoder_without_headers():
    fields = [_field("name", label="Name")]

    content = pandas_xlsx_encoder([{"Name": "Acme"}], fields, ExportOptions(include_headers=False))

    data = pd.read_excel(io.BytesIO(content), sheet_name="Export Data", header=None)
    assert data.values.tolist() == [["Acme"]]
