"""
sheets.py
~~~~~~~~~
Sheet kinds, the Row record and the per-kind column schemas shared by the
file parser, the validator, the exporter and the AI job processor.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class SheetKind(str, Enum):
    QCM = "qcm"
    QROC = "qroc"
    CAS_QCM = "cas_qcm"
    CAS_QROC = "cas_qroc"


# Fixed processing order for validation runs and exports.
SHEET_ORDER: tuple[SheetKind, ...] = (
    SheetKind.QCM,
    SheetKind.QROC,
    SheetKind.CAS_QCM,
    SheetKind.CAS_QROC,
)

QCM_KINDS = frozenset({SheetKind.QCM, SheetKind.CAS_QCM})
QROC_KINDS = frozenset({SheetKind.QROC, SheetKind.CAS_QROC})


# ─── Column Schema ───────────────────────────────────────────────────────────
# Canonical field -> accepted header spellings (compared after normalize_label).
COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "question": ("question", "texte de la question", "texte question", "enonce", "question text"),
    "answer": ("reponse", "reponses", "answer", "bonne reponse", "reponse correcte", "correct answer"),
    "explanation": ("explication", "explications", "explanation", "commentaire"),
    "case": ("cas", "cas clinique", "texte du cas", "case", "case text"),
}

_OPTION_LABEL = re.compile(r"^(?:option|proposition|choix)?_?([a-e])$")


@dataclass(frozen=True)
class SheetSchema:
    kind: SheetKind
    required: tuple[str, ...]
    optional: tuple[str, ...] = ("explanation",)


SCHEMAS: dict[SheetKind, SheetSchema] = {
    kind: SheetSchema(kind=kind, required=("question", "answer")) for kind in SHEET_ORDER
}


def normalize_label(value: str) -> str:
    """Lowercase, strip accents and collapse separators: 'Cas QCM' -> 'cas_qcm'."""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[\s\-_/]+", "_", text.strip().lower())
    return text.strip("_")


def parse_sheet_kind(name: str) -> SheetKind | None:
    try:
        return SheetKind(normalize_label(name))
    except ValueError:
        return None


def resolve_column(columns: Mapping[str, Any], field_name: str) -> str | None:
    """Return the actual header in `columns` that holds `field_name`, if any."""
    aliases = {normalize_label(a) for a in COLUMN_ALIASES[field_name]}
    for header in columns:
        if normalize_label(header) in aliases:
            return header
    return None


# ─── Row ─────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Row:
    """One spreadsheet record. `index` is 1-based within its sheet."""
    sheet: SheetKind
    index: int
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze the column mapping while keeping source column order.
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def value(self, field_name: str) -> Any:
        header = resolve_column(self.data, field_name)
        return None if header is None else self.data[header]

    def to_dict(self) -> dict[str, Any]:
        return {"sheet": self.sheet.value, "row": self.index, "data": dict(self.data)}


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN
        return True
    return str(value).strip() == ""


def option_columns(columns: Mapping[str, Any]) -> list[tuple[str, str]]:
    """QCM proposition columns as (letter, header) pairs: 'A', 'Proposition B', 'option_c'."""
    found: list[tuple[str, str]] = []
    for header in columns:
        match = _OPTION_LABEL.match(normalize_label(header))
        if match:
            found.append((match.group(1).upper(), header))
    return sorted(found)
