"""
row_validator.py
~~~~~~~~~~~~~~~~
Classifies spreadsheet rows into good and bad per sheet kind.

Rules:
  • Every sheet requires a question text and an answer.
  • QCM sheets (qcm, cas_qcm): the answer is one or more letters A–E
    (case-insensitive, separators allowed), "?" or a "no answer" sentinel.
  • QROC sheets (qroc, cas_qroc): the answer is any non-blank text.
  • Explanations are optional and passed through untouched.

The validator never mutates cell values: a good row's normalized data is the
original column mapping. Pure and deterministic.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from app.core.errors import ValidationSchemaError
from app.services.sheets import (
    QCM_KINDS,
    SCHEMAS,
    SHEET_ORDER,
    Row,
    SheetKind,
    is_blank,
    normalize_label,
    parse_sheet_kind,
    resolve_column,
)

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────
QCM_LETTERS: frozenset[str] = frozenset("ABCDE")
UNKNOWN_ANSWER: str = "?"
NO_ANSWER_SENTINELS: frozenset[str] = frozenset({
    "pas de reponse",
    "pas_de_reponse",
    "aucune reponse",
    "aucune",
    "no answer",
    "none",
})
_ANSWER_SEPARATORS = re.compile(r"[\s,;/+]+")


# ─── Outcomes ────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class GoodRow:
    row: Row
    data: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"sheet": self.row.sheet.value, "row": self.row.index, "data": dict(self.data)}


@dataclass(frozen=True)
class BadRow:
    row: Row
    reason: str

    def __post_init__(self) -> None:
        if not self.reason or not self.reason.strip():
            raise ValueError("BadRow.reason must not be empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheet": self.row.sheet.value,
            "row": self.row.index,
            "reason": self.reason,
            "original": dict(self.row.data),
        }


@dataclass
class ValidationResult:
    good: list[GoodRow] = field(default_factory=list)
    bad: list[BadRow] = field(default_factory=list)

    @property
    def good_count(self) -> int:
        return len(self.good)

    @property
    def bad_count(self) -> int:
        return len(self.bad)

    def to_dict(self) -> dict[str, Any]:
        return {
            "good": [g.to_dict() for g in self.good],
            "bad": [b.to_dict() for b in self.bad],
            "goodCount": self.good_count,
            "badCount": self.bad_count,
        }


# ─── Answer Predicates ───────────────────────────────────────────────────────
def invalid_qcm_letters(answer: Any) -> list[str]:
    """
    Return the offending tokens of a QCM answer; an empty list means valid.
    Accepts "C", "a", "A, C", "ACD", "?", "Pas de réponse".
    """
    text = str(answer).strip()
    if text == UNKNOWN_ANSWER or normalize_label(text).replace("_", " ") in NO_ANSWER_SENTINELS:
        return []

    tokens = [t for t in _ANSWER_SEPARATORS.split(text.upper()) if t]
    if not tokens:
        # Only separators, no letter at all
        return [text]

    invalid: list[str] = []
    for token in tokens:
        invalid.extend(ch for ch in token if ch not in QCM_LETTERS)
    # Keep first-seen order, drop duplicates
    return list(dict.fromkeys(invalid))


def _check_row(row: Row) -> str | None:
    """Return a rejection reason, or None when the row is good."""
    schema = SCHEMAS[row.sheet]

    headers: dict[str, str] = {}
    for field_name in schema.required:
        header = resolve_column(row.data, field_name)
        if header is None:
            return f"Missing required column '{field_name}'"
        headers[field_name] = header

    if is_blank(row.data[headers["question"]]):
        return f"Empty value in required column '{headers['question']}'"

    answer = row.data[headers["answer"]]
    if row.sheet in QCM_KINDS:
        if is_blank(answer):
            return f"Empty QCM answer in column '{headers['answer']}'"
        bad_letters = invalid_qcm_letters(answer)
        if bad_letters:
            return (
                f"Invalid QCM answer '{str(answer).strip()}': unexpected "
                f"{', '.join(repr(b) for b in bad_letters)} (expected A-E, '?' or 'Pas de réponse')"
            )
    elif is_blank(answer):
        return f"Empty QROC answer in column '{headers['answer']}'"

    return None


# ─── Entry Point ─────────────────────────────────────────────────────────────
def _coerce_kinds(sheets: Mapping[Any, Sequence[Row]]) -> dict[SheetKind, Sequence[Row]]:
    resolved: dict[SheetKind, Sequence[Row]] = {}
    unknown: list[str] = []
    for name, rows in sheets.items():
        kind = name if isinstance(name, SheetKind) else parse_sheet_kind(str(name))
        if kind is None:
            unknown.append(str(name))
            continue
        resolved[kind] = rows
    if unknown:
        raise ValidationSchemaError(
            f"Unrecognized sheet(s): {', '.join(unknown)}. "
            f"Expected: {', '.join(k.value for k in SHEET_ORDER)}",
            sheets=unknown,
        )
    return resolved


def validate(sheets: Mapping[Any, Sequence[Row]]) -> ValidationResult:
    """
    Classify every row of every sheet. Each row yields exactly one outcome.

    Raises:
        ValidationSchemaError: if any sheet name is not a recognised kind.
    """
    by_kind = _coerce_kinds(sheets)
    result = ValidationResult()

    for kind in SHEET_ORDER:
        for row in by_kind.get(kind, ()):
            if row.sheet is not kind:
                row = Row(sheet=kind, index=row.index, data=row.data)
            reason = _check_row(row)
            if reason is None:
                result.good.append(GoodRow(row=row, data=row.data))
            else:
                result.bad.append(BadRow(row=row, reason=reason))

    logger.info(
        "Validation finished — %d good, %d bad across %d sheet(s).",
        result.good_count, result.bad_count, len(by_kind),
    )
    return result
