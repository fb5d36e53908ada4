from __future__ import annotations

import io
import logging
import os
from typing import Any

import polars as pl

from app.core.errors import FileParseError, ValidationSchemaError
from app.services.sheets import SHEET_ORDER, Row, SheetKind, is_blank, parse_sheet_kind

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────
ALLOWED_EXTENSIONS: set[str] = {".csv", ".xls", ".xlsx"}

SheetRows = dict[SheetKind, list[Row]]


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def _frame_to_rows(kind: SheetKind, df: pl.DataFrame) -> list[Row]:
    """
    Convert one sheet to Row records. Fully blank lines are skipped but the
    1-based index keeps the position of the line in the sheet.
    """
    rows: list[Row] = []
    for position, record in enumerate(df.iter_rows(named=True), start=1):
        if all(is_blank(v) for v in record.values()):
            continue
        rows.append(Row(sheet=kind, index=position, data=record))
    return rows


def _resolve_sheet_names(names: list[str]) -> dict[str, SheetKind]:
    resolved: dict[str, SheetKind] = {}
    unknown: list[str] = []
    for name in names:
        kind = parse_sheet_kind(name)
        if kind is None:
            unknown.append(name)
        else:
            resolved[name] = kind
    if unknown:
        raise ValidationSchemaError(
            f"Unrecognized sheet(s): {', '.join(unknown)}. "
            f"Expected: {', '.join(k.value for k in SHEET_ORDER)}",
            sheets=unknown,
        )
    return resolved


def _read_workbook(content: bytes) -> dict[str, pl.DataFrame]:
    try:
        # sheet_id=0 loads every sheet as {name: DataFrame}
        frames = pl.read_excel(io.BytesIO(content), sheet_id=0, raise_if_empty=False)
    except Exception as e:
        logger.error("Workbook parse failed: %s", e)
        raise FileParseError(f"Could not read spreadsheet: {e}")
    if isinstance(frames, pl.DataFrame):
        raise FileParseError("Workbook did not expose named sheets")
    return frames


def _read_csv(content: bytes) -> pl.DataFrame:
    try:
        # infer_schema_length=0 keeps every cell as text, like a spreadsheet cell
        return pl.read_csv(io.BytesIO(content), infer_schema_length=0)
    except Exception as e:
        logger.error("CSV parse failed: %s", e)
        raise FileParseError(f"Could not read CSV: {e}")


def parse_upload(content: bytes, filename: str, sheet_kind: str | None = None) -> SheetRows:
    """
    Turn an uploaded workbook into rows grouped by sheet kind.

    Excel files contribute one entry per sheet, named after the sheet.
    A CSV file is a single sheet whose kind comes from `sheet_kind` or,
    failing that, from the file stem (e.g. ``cas_qcm.csv``).

    Raises:
        FileParseError:        corrupt or unsupported file.
        ValidationSchemaError: a sheet name is not one of the four kinds.
    """
    logger.info("═══ parse_upload started — '%s' (%d bytes) ═══", filename, len(content))
    extension = _extension(filename)
    if extension not in ALLOWED_EXTENSIONS:
        raise FileParseError(f"Unsupported format '{extension}'")
    if not content:
        raise FileParseError("File is empty")

    if extension == ".csv":
        name = sheet_kind or os.path.splitext(os.path.basename(filename))[0]
        frames = {name: _read_csv(content)}
    else:
        frames = _read_workbook(content)

    kinds = _resolve_sheet_names(list(frames.keys()))

    sheets: SheetRows = {}
    for name, df in frames.items():
        kind = kinds[name]
        # Two source sheets may normalize to the same kind ("QCM" and "qcm")
        sheets.setdefault(kind, []).extend(_frame_to_rows(kind, df))

    logger.info(
        "Parsed %s: %s",
        filename,
        ", ".join(f"{k.value}={len(v)}" for k, v in sheets.items()) or "no rows",
    )
    return sheets


def rows_in_order(sheets: dict[SheetKind, list[Row]]) -> list[Row]:
    """Flatten sheets in the declared sheet order."""
    flat: list[Row] = []
    for kind in SHEET_ORDER:
        flat.extend(sheets.get(kind, []))
    return flat


def row_from_payload(payload: dict[str, Any]) -> Row:
    """Rebuild a Row from the {sheet, row, data|original} JSON shape."""
    kind = parse_sheet_kind(str(payload.get("sheet", "")))
    if kind is None:
        raise ValidationSchemaError(f"Unrecognized sheet: {payload.get('sheet')!r}", sheets=[str(payload.get("sheet"))])
    data = payload.get("data")
    if data is None:
        data = payload.get("original") or {}
    return Row(sheet=kind, index=int(payload.get("row", 0)), data=data)
