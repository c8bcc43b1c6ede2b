"""Export formatting: ParsingResults -> JSON / CSV / structured JSON / Excel bytes.

Every method is pure. Output bytes depend only on the input records; the
clock is read for the filename timestamp and nowhere else.
"""

from __future__ import annotations

import csv
import io
import json
import re
import zipfile
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence, Union

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font
from openpyxl.writer.excel import ExcelWriter

from docflow.core.errors import InvalidRequestError
from docflow.services.ai.document_extract.contracts import ParsingResult

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

MIME_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "excel": XLSX_MIME,
    "structured": "application/json",
    "pdf": "application/pdf",
    "zip": "application/zip",
}

EXTENSIONS = {
    "json": "json",
    "csv": "csv",
    "excel": "xlsx",
    "structured": "json",
    "pdf": "pdf",
    "zip": "zip",
}

GENERATED_FORMATS = ("json", "csv", "excel", "structured")

CSV_HEADER = ["Document", "Field Name", "Value", "Confidence"]
SHEET_TITLE = "Extracted Data"
COLUMN_WIDTHS = (32, 32, 48, 12)

# Pinned so identical workbooks produce identical bytes.
WORKBOOK_TIMESTAMP = datetime(2000, 1, 1)
ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class ExportRecord:
    """One document's contribution to an export."""

    document_id: str
    document_name: str
    result: ParsingResult


@dataclass(frozen=True)
class FormattedExport:
    format: str
    filename: str
    mime_type: str
    data: Union[str, bytes]

    def as_bytes(self) -> bytes:
        return self.data.encode("utf-8") if isinstance(self.data, str) else self.data

    @property
    def size(self) -> int:
        return len(self.as_bytes())


Records = Union[ExportRecord, Sequence[ExportRecord]]


def slugify_name(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]", "_", (name or "").strip())
    return slug or "export"


def _as_list(records: Records) -> list[ExportRecord]:
    if isinstance(records, ExportRecord):
        return [records]
    return list(records)


def _cell_text(value: Any) -> str:
    """Single-line text for a tabular cell."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    else:
        text = str(value)
    return " ".join(text.splitlines())


def _dumps(obj: Any, pretty: bool = True) -> str:
    return json.dumps(obj, indent=2 if pretty else None, ensure_ascii=False, default=str)


def batch_summary(records: Sequence[ExportRecord]) -> dict[str, Any]:
    types = Counter(record.result.document_type for record in records)
    average = 0.0
    if records:
        average = round(sum(record.result.confidence for record in records) / len(records), 2)
    return {
        "total_documents": len(records),
        "document_types": dict(sorted(types.items())),
        "average_confidence": average,
    }


class DataFormatter:
    """Turns export records into a ``FormattedExport``.

    A single ``ExportRecord`` is a single-document export; a sequence is a
    batch, even when it holds one record.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def filename(self, name: str, target: str) -> str:
        millis = int(self._clock().timestamp() * 1000)
        return f"{slugify_name(name)}_{millis}.{EXTENSIONS[target]}"

    def _build(self, target: str, name: str, data: Union[str, bytes]) -> FormattedExport:
        return FormattedExport(
            format=target,
            filename=self.filename(name, target),
            mime_type=MIME_TYPES[target],
            data=data,
        )

    def format(self, records: Records, target: str, name: str = "extracted_data") -> FormattedExport:
        if target == "json":
            return self.to_json(records, name)
        if target == "csv":
            return self.to_csv(records, name)
        if target == "excel":
            return self.to_excel(records, name)
        if target == "structured":
            return self.to_structured(records, name)
        raise InvalidRequestError(f"Export format {target!r} cannot be generated")

    def to_json(self, records: Records, name: str = "extracted_data", pretty: bool = True) -> FormattedExport:
        if isinstance(records, ExportRecord):
            payload: Any = records.result.model_dump(mode="json")
        else:
            batch = _as_list(records)
            payload = {
                "documents": [
                    {
                        "document_id": record.document_id,
                        "document_name": record.document_name,
                        **record.result.model_dump(mode="json"),
                    }
                    for record in batch
                ],
                "summary": batch_summary(batch),
            }
        return self._build("json", name, _dumps(payload, pretty))

    def table_rows(self, records: Records) -> list[list[Any]]:
        """Header plus one row per document-field pair."""
        rows: list[list[Any]] = [list(CSV_HEADER)]
        for record in _as_list(records):
            for field in record.result.extracted_fields:
                rows.append(
                    [
                        _cell_text(record.document_name),
                        _cell_text(field.name),
                        _cell_text(field.value),
                        field.confidence,
                    ]
                )
        return rows

    def to_csv(self, records: Records, name: str = "extracted_data") -> FormattedExport:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        for row in self.table_rows(records):
            writer.writerow(["" if cell is None else cell for cell in row])
        return self._build("csv", name, buf.getvalue())

    def to_structured(self, records: Records, name: str = "extracted_data") -> FormattedExport:
        if isinstance(records, ExportRecord):
            payload: Any = records.result.structured_data
        else:
            payload = {
                "documents": [
                    {
                        "document_id": record.document_id,
                        "document_name": record.document_name,
                        "document_type": record.result.document_type,
                        "data": record.result.structured_data,
                    }
                    for record in _as_list(records)
                ]
            }
        return self._build("structured", name, _dumps(payload, pretty=True))

    def to_excel(self, records: Records, name: str = "extracted_data") -> FormattedExport:
        wb = Workbook()
        ws = wb.active
        ws.title = SHEET_TITLE

        for row in self.table_rows(records):
            ws.append([ILLEGAL_CHARACTERS_RE.sub("", c) if isinstance(c, str) else c for c in row])
        # Extracted text starting with "=" is data, never a formula.
        for sheet_row in ws.iter_rows():
            for cell in sheet_row:
                if cell.data_type == "f":
                    cell.data_type = "s"

        header_font = Font(bold=True)
        for cell in ws[1]:
            cell.font = header_font
        for col, width in enumerate(COLUMN_WIDTHS, start=1):
            ws.column_dimensions[ws.cell(row=1, column=col).column_letter].width = width
        ws.freeze_panes = "A2"

        wb.properties.created = WORKBOOK_TIMESTAMP
        wb.properties.modified = WORKBOOK_TIMESTAMP

        return self._build("excel", name, _workbook_bytes(wb))


def _workbook_bytes(wb: Workbook) -> bytes:
    # ExcelWriter directly: Workbook.save() would stamp the current time.
    raw = io.BytesIO()
    ExcelWriter(wb, zipfile.ZipFile(raw, "w", zipfile.ZIP_DEFLATED)).save()

    out = io.BytesIO()
    with zipfile.ZipFile(raw) as src, zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as dst:
        for info in src.infolist():
            pinned = zipfile.ZipInfo(info.filename, date_time=ZIP_TIMESTAMP)
            pinned.compress_type = zipfile.ZIP_DEFLATED
            dst.writestr(pinned, src.read(info.filename))
    return out.getvalue()
