"""
Tests for the export data formatter.

Covers:
  - JSON single/batch payloads and the batch summary
  - CSV: one line per document-field pair plus header, quoting, empty values
  - Structured JSON
  - Excel: same rows as CSV, byte-identical output for identical input
  - Filenames and unsupported targets
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone

import pytest
from openpyxl import load_workbook

from docflow.core.errors import InvalidRequestError
from docflow.services.ai.document_extract.contracts import (
    ExtractedField,
    ExtractionMetadata,
    ParsingResult,
)
from docflow.services.export_formatter import (
    CSV_HEADER,
    XLSX_MIME,
    DataFormatter,
    ExportRecord,
    slugify_name,
)

FIXED_CLOCK = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _formatter() -> DataFormatter:
    return DataFormatter(clock=lambda: FIXED_CLOCK)


def _result(fields, document_type="invoice", confidence=90.0) -> ParsingResult:
    return ParsingResult(
        document_type=document_type,
        confidence=confidence,
        summary=f"A {document_type}",
        extracted_fields=tuple(
            ExtractedField(name=name, value=value, confidence=conf) for name, value, conf in fields
        ),
        structured_data={name: value for name, value, _ in fields},
        metadata=ExtractionMetadata(provider="mock", model="mock-v1"),
    )


def _records():
    return [
        ExportRecord(
            "d1",
            "invoice-1.pdf",
            _result([("invoice_number", "INV-1", 95.0), ("total", "10.00", 90.0), ("note", None, None)]),
        ),
        ExportRecord(
            "d2",
            "receipt.png",
            _result([("merchant", 'Bob\'s "Cafe", Vilnius', 80.0)], document_type="receipt", confidence=70.0),
        ),
    ]


def test_single_json_is_the_parsing_result():
    record = _records()[0]
    out = _formatter().format(record, "json", "Invoice 1")

    assert out.mime_type == "application/json"
    payload = json.loads(out.data)
    assert payload == record.result.model_dump(mode="json")
    assert ParsingResult.model_validate(payload) == record.result


def test_batch_json_has_documents_and_summary():
    out = _formatter().to_json(_records(), "batch")
    payload = json.loads(out.data)

    assert [d["document_id"] for d in payload["documents"]] == ["d1", "d2"]
    assert payload["documents"][1]["document_name"] == "receipt.png"
    assert payload["summary"] == {
        "total_documents": 2,
        "document_types": {"invoice": 1, "receipt": 1},
        "average_confidence": 80.0,
    }


def test_csv_line_count_matches_fields():
    out = _formatter().to_csv(_records(), "batch")
    lines = out.data.split("\n")

    assert lines[-1] == ""
    assert len(lines) - 1 == 1 + 3 + 1
    rows = list(csv.reader(io.StringIO(out.data)))
    assert rows[0] == CSV_HEADER
    assert rows[1] == ["invoice-1.pdf", "invoice_number", "INV-1", "95.0"]
    assert rows[3] == ["invoice-1.pdf", "note", "", ""]


def test_csv_quotes_commas_and_quotes():
    out = _formatter().to_csv(_records(), "batch")
    assert '"Bob\'s ""Cafe"", Vilnius"' in out.data
    rows = list(csv.reader(io.StringIO(out.data)))
    assert rows[4][2] == 'Bob\'s "Cafe", Vilnius'


def test_csv_multiline_values_stay_on_one_line():
    record = ExportRecord("d3", "memo.txt", _result([("address", "Gedimino pr. 1\nVilnius", 88.0)]))
    out = _formatter().to_csv([record], "memo")
    assert out.data.count("\n") == 2
    assert "Gedimino pr. 1 Vilnius" in out.data


def test_csv_nested_values_are_compact_json():
    record = ExportRecord("d4", "doc", _result([("meta", {"b": 2, "a": 1}, None)]))
    rows = list(csv.reader(io.StringIO(_formatter().to_csv(record).data)))
    assert rows[1][2] == '{"a":1,"b":2}'


def test_structured_single_and_batch():
    single = json.loads(_formatter().to_structured(_records()[0]).data)
    assert single == {"invoice_number": "INV-1", "total": "10.00", "note": None}

    batch = json.loads(_formatter().to_structured(_records()).data)
    assert batch["documents"][1]["document_type"] == "receipt"
    assert batch["documents"][1]["data"] == {"merchant": 'Bob\'s "Cafe", Vilnius'}


def test_excel_rows_match_csv():
    formatter = _formatter()
    out = formatter.to_excel(_records(), "batch")
    assert out.mime_type == XLSX_MIME
    assert out.filename.endswith(".xlsx")

    wb = load_workbook(io.BytesIO(out.data))
    ws = wb["Extracted Data"]
    rows = [list(row) for row in ws.iter_rows(values_only=True)]

    assert rows[0] == CSV_HEADER
    assert len(rows) == 1 + 3 + 1
    assert rows[1] == ["invoice-1.pdf", "invoice_number", "INV-1", 95.0]
    assert rows[3][2] in (None, "")
    assert ws.freeze_panes == "A2"
    assert ws["A1"].font.bold


def test_excel_is_byte_identical_for_identical_input():
    first = DataFormatter(clock=lambda: FIXED_CLOCK).to_excel(_records()).data
    second = DataFormatter(clock=lambda: datetime(2030, 1, 1, tzinfo=timezone.utc)).to_excel(_records()).data
    assert first == second


def test_excel_strips_control_characters():
    record = ExportRecord("d5", "ctl", _result([("raw", "ok\x01value", 50.0)]))
    wb = load_workbook(io.BytesIO(_formatter().to_excel(record).data))
    assert wb.active["C2"].value == "okvalue"


def test_excel_keeps_leading_equals_as_text():
    record = ExportRecord("d6", '=HYPERLINK("http://x")', _result([("total", "=1+1", 50.0)]))
    ws = load_workbook(io.BytesIO(_formatter().to_excel(record).data)).active

    assert ws["C2"].value == "=1+1"
    assert ws["C2"].data_type == "s"
    assert ws["A2"].value == '=HYPERLINK("http://x")'
    assert ws["A2"].data_type == "s"


def test_filename_is_slug_plus_millis():
    out = _formatter().format(_records(), "csv", "Q1 report/2024")
    millis = int(FIXED_CLOCK.timestamp() * 1000)
    assert out.filename == f"Q1_report_2024_{millis}.csv"
    assert out.size == len(out.data.encode("utf-8"))


def test_slugify_name():
    assert slugify_name("My Export!") == "My_Export_"
    assert slugify_name("   ") == "export"


@pytest.mark.parametrize("target", ["pdf", "zip", "xml"])
def test_unsupported_targets_are_rejected(target):
    with pytest.raises(InvalidRequestError):
        _formatter().format(_records(), target)


def test_output_is_independent_of_clock_except_filename():
    a = DataFormatter(clock=lambda: FIXED_CLOCK).to_csv(_records(), "x")
    b = DataFormatter(clock=lambda: datetime(2031, 5, 5, tzinfo=timezone.utc)).to_csv(_records(), "x")
    assert a.data == b.data
    assert a.filename != b.filename
