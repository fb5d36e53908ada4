"""
export.py
~~~~~~~~~
Serializes rows back into a downloadable .xlsx workbook, one worksheet per
sheet kind, in the declared sheet order.
"""
from __future__ import annotations

import io
import logging
from typing import Any, Iterable, Literal, Mapping

import polars as pl
import xlsxwriter

from app.services.sheets import SHEET_ORDER, Row, SheetKind, parse_sheet_kind

logger = logging.getLogger(__name__)

ExportMode = Literal["good", "bad"]

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SOURCE_ROW_COLUMN = "source_row"
REASON_COLUMN = "error_reason"


def _cell(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value != value:
        return None
    return str(value)


def _frame(records: list[dict[str, Any]]) -> pl.DataFrame:
    columns: list[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    data = {col: [_cell(r.get(col)) for r in records] for col in columns}
    return pl.DataFrame(data, schema={col: pl.String for col in columns})


def write_workbook(sheets: Mapping[SheetKind, list[dict[str, Any]]]) -> bytes:
    """Write {kind: [record, ...]} to xlsx bytes. Empty kinds are omitted."""
    buffer = io.BytesIO()
    workbook = xlsxwriter.Workbook(buffer, {"in_memory": True})
    try:
        for kind in SHEET_ORDER:
            records = sheets.get(kind) or []
            if not records:
                continue
            _frame(records).write_excel(workbook=workbook, worksheet=kind.value, autofit=True)
    finally:
        workbook.close()
    return buffer.getvalue()


def _group(payload: Iterable[Mapping[str, Any]], mode: ExportMode) -> dict[SheetKind, list[dict[str, Any]]]:
    grouped: dict[SheetKind, list[dict[str, Any]]] = {}
    for item in payload:
        kind = parse_sheet_kind(str(item.get("sheet", "")))
        if kind is None:
            logger.warning("Export skipped row with unknown sheet %r", item.get("sheet"))
            continue
        if mode == "good":
            record = dict(item.get("data") or {})
        else:
            record = {SOURCE_ROW_COLUMN: item.get("row")}
            record.update(item.get("original") or {})
            record[REASON_COLUMN] = item.get("reason")
        grouped.setdefault(kind, []).append(record)
    return grouped


def export_validation(mode: ExportMode, good: Iterable[Mapping[str, Any]], bad: Iterable[Mapping[str, Any]]) -> bytes:
    """
    Export one side of a validation run. Items use the API shapes:
    good → {sheet, row, data}; bad → {sheet, row, reason, original}.
    """
    if mode not in ("good", "bad"):
        raise ValueError(f"Unknown export mode '{mode}'")
    payload = good if mode == "good" else bad
    grouped = _group(payload, mode)
    logger.info("Exporting %s rows: %s", mode, {k.value: len(v) for k, v in grouped.items()})
    return write_workbook(grouped)


def export_rows(rows: Iterable[Row]) -> bytes:
    """Export job rows (enriched or passed through) keeping source order."""
    grouped: dict[SheetKind, list[dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row.sheet, []).append(dict(row.data))
    return write_workbook(grouped)
