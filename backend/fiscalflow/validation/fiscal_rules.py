"""
Fiscal consistency rules — deterministic, side-effect-free checks of the
tax fields found in a document's text.

For every document:
    - CFOP (operation code), CST (tax situation) and NCM (merchandise
      classification) codes are extracted with keyword-anchored patterns,
      falling back to looser patterns only when the anchored ones find
      nothing.  Values failing the format rules are kept apart from
      values that are simply absent.
    - ICMS base, rate and reported value are read from labelled fields
      and the reported value is checked against base × rate.

Numbers are written the Brazilian way ("1.234,56"); XML fields use a
decimal point ("1234.56").  Both are accepted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

# ─── Code patterns ────────────────────────────────────
# Anchored: a label, up to 20 non-digit characters on the same line, then the value.
_VALUE = r"(\d(?:[\d.]*\d)?)"
CFOP_ANCHORED = re.compile(r"\bCFOP\b[^\d\n]{0,20}" + _VALUE, re.IGNORECASE)
CST_ANCHORED = re.compile(r"\b(?:CST|CSOSN)\b[^\d\n]{0,20}(\d+)", re.IGNORECASE)
NCM_ANCHORED = re.compile(r"\bNCM(?:/SH)?\b[^\d\n]{0,20}" + _VALUE, re.IGNORECASE)

CFOP_FALLBACK = re.compile(r"(?<![\d.,$])(?<!\$ )\b([1-7]\.\d{3})\b(?![.,]\d)")
CST_FALLBACK = re.compile(r"Situa[çc][ãa]o\s+Tribut[áa]ria[^\d\n]{0,20}(\d+)", re.IGNORECASE)
NCM_FALLBACK = re.compile(r"(?<![\d.])(\d{4}\.\d{2}\.\d{2})(?![\d.])")

CFOP_FORMAT = re.compile(r"^[1-7]\d{3}$")
CST_FORMAT = re.compile(r"^\d{2,3}$")

# ─── ICMS labelled fields ─────────────────────────────
_AMOUNT = r"\s*[:=\-]?\s*(?:R\$\s*)?(-?\d[\d.,]*)"
ICMS_BASE = re.compile(
    r"(?:Base\s+de\s+C[áa]lculo\s+(?:do\s+)?ICMS|BC\s+(?:do\s+)?ICMS|<vBC>)" + _AMOUNT,
    re.IGNORECASE,
)
ICMS_RATE = re.compile(
    r"(?:Al[íi]quota\s+(?:do\s+)?ICMS|Al[íi]q\.?\s+ICMS|<pICMS>)" + _AMOUNT,
    re.IGNORECASE,
)
ICMS_VALUE = re.compile(
    r"(?:Valor\s+(?:do\s+)?ICMS|Vlr\.?\s+ICMS|<vICMS>)" + _AMOUNT,
    re.IGNORECASE,
)
ICMS_MENTION = re.compile(r"\bICMS\b", re.IGNORECASE)

_NUMBER_SHAPE = re.compile(r"-?\d[\d.,]*")

# Tolerance band: 2% of the expected value, never less than one unit.
TOLERANCE_RATE = 0.02
TOLERANCE_FLOOR = 1.0


# ═══════════════════════════════════════════════════════════
#  Numbers
# ═══════════════════════════════════════════════════════════

def parse_localized_number(value: Any) -> float | None:
    """
    Parse "1.234,56", "R$ 180,00", "18%", "1234.56" into a float.

    A comma is always the decimal separator and dots are then thousands
    separators.  Without a comma, a single dot followed by exactly three
    digits is a thousands separator ("1.000"); any other single dot is a
    decimal point ("18.0000").  Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)

    text = re.sub(r"(?i)r\$|%|\s", "", str(value)).rstrip(".,")
    if not text or not _NUMBER_SHAPE.fullmatch(text):
        return None

    if "," in text:
        if text.count(",") > 1:
            return None
        text = text.replace(".", "").replace(",", ".")
    elif text.count(".") == 1 and len(text.rsplit(".", 1)[1]) != 3:
        pass
    else:
        text = text.replace(".", "")

    try:
        return float(text)
    except ValueError:
        return None


def round_currency(value: float) -> float:
    """Half-up rounding to two decimals."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_brl(value: float) -> str:
    """1234.5 → "1.234,50"."""
    return f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


# ═══════════════════════════════════════════════════════════
#  Extraction
# ═══════════════════════════════════════════════════════════

@dataclass
class FiscalCodes:
    """Codes found in one document, valid and malformed kept apart."""

    cfops: list[str] = field(default_factory=list)
    csts: list[str] = field(default_factory=list)
    ncms: list[str] = field(default_factory=list)
    invalid_cfops: list[str] = field(default_factory=list)
    invalid_csts: list[str] = field(default_factory=list)


def _find_codes(text: str, anchored: re.Pattern, fallback: re.Pattern) -> list[str]:
    matches = [m.group(1) for m in anchored.finditer(text)]
    if not matches:
        matches = [m.group(1) for m in fallback.finditer(text)]
    # dict preserves first-seen order
    return list(dict.fromkeys(m.replace(".", "") for m in matches))


def _split_by_format(values: list[str], pattern: re.Pattern) -> tuple[list[str], list[str]]:
    valid = [v for v in values if pattern.match(v)]
    invalid = [v for v in values if not pattern.match(v)]
    return valid, invalid


def extract_codes(text: str) -> FiscalCodes:
    text = text or ""
    cfops, invalid_cfops = _split_by_format(_find_codes(text, CFOP_ANCHORED, CFOP_FALLBACK), CFOP_FORMAT)
    csts, invalid_csts = _split_by_format(_find_codes(text, CST_ANCHORED, CST_FALLBACK), CST_FORMAT)
    ncms = _find_codes(text, NCM_ANCHORED, NCM_FALLBACK)
    return FiscalCodes(
        cfops=cfops,
        csts=csts,
        ncms=ncms,
        invalid_cfops=invalid_cfops,
        invalid_csts=invalid_csts,
    )


@dataclass
class IcmsFields:
    base: float | None = None
    rate: float | None = None
    reported: float | None = None

    @property
    def any_present(self) -> bool:
        return any(v is not None for v in (self.base, self.rate, self.reported))


def _first_number(pattern: re.Pattern, text: str) -> float | None:
    for match in pattern.finditer(text):
        number = parse_localized_number(match.group(1))
        if number is not None:
            return number
    return None


def extract_icms_fields(text: str) -> IcmsFields:
    text = text or ""
    return IcmsFields(
        base=_first_number(ICMS_BASE, text),
        rate=_first_number(ICMS_RATE, text),
        reported=_first_number(ICMS_VALUE, text),
    )


# ═══════════════════════════════════════════════════════════
#  ICMS consistency
# ═══════════════════════════════════════════════════════════

@dataclass
class IcmsCheck:
    expected: float | None = None
    difference: float | None = None
    consistent: bool | None = None
    tolerance: float | None = None


def check_icms_consistency(
    base: float | None,
    rate: float | None,
    reported: float | None,
) -> IcmsCheck:
    """
    expected = round(base × rate / 100, 2) when base and rate are known;
    consistent when |expected − reported| ≤ max(1, 2% of expected).
    """
    if base is None or rate is None:
        return IcmsCheck()

    expected = round_currency(base * rate / 100)
    if reported is None:
        return IcmsCheck(expected=expected)

    difference = round_currency(abs(expected - reported))
    tolerance = max(TOLERANCE_FLOOR, expected * TOLERANCE_RATE)
    return IcmsCheck(
        expected=expected,
        difference=difference,
        consistent=difference <= tolerance,
        tolerance=round_currency(tolerance),
    )


# ═══════════════════════════════════════════════════════════
#  Per-document and batch results
# ═══════════════════════════════════════════════════════════

@dataclass
class FiscalDocumentCheck:
    """FiscalCheckSummary of one document."""

    file_name: str
    cfops: list[str] = field(default_factory=list)
    csts: list[str] = field(default_factory=list)
    ncms: list[str] = field(default_factory=list)
    invalid_cfops: list[str] = field(default_factory=list)
    invalid_csts: list[str] = field(default_factory=list)
    icms_base: float | None = None
    icms_rate: float | None = None
    icms_reported: float | None = None
    icms_expected: float | None = None
    icms_difference: float | None = None
    icms_consistent: bool | None = None
    observations: list[str] = field(default_factory=list)

    @property
    def missing_cfop(self) -> bool:
        return not self.cfops and not self.invalid_cfops

    @property
    def missing_cst(self) -> bool:
        return not self.csts and not self.invalid_csts

    @property
    def missing_ncm(self) -> bool:
        return not self.ncms

    @property
    def flagged(self) -> bool:
        return bool(self.observations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "cfops": self.cfops,
            "csts": self.csts,
            "ncms": self.ncms,
            "invalidCfops": self.invalid_cfops,
            "invalidCsts": self.invalid_csts,
            "icmsBase": self.icms_base,
            "icmsRate": self.icms_rate,
            "icmsReported": self.icms_reported,
            "icmsExpected": self.icms_expected,
            "icmsDifference": self.icms_difference,
            "icmsConsistent": self.icms_consistent,
            "observations": self.observations,
        }


@dataclass
class FiscalBatchSummary:
    documents_analyzed: int = 0
    documents_with_missing_cfop: int = 0
    documents_with_missing_cst: int = 0
    documents_with_missing_ncm: int = 0
    invalid_cfop_count: int = 0
    invalid_cst_count: int = 0
    consistent_icms_count: int = 0
    inconsistent_icms_count: int = 0
    flagged_documents: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "documentsAnalyzed": self.documents_analyzed,
            "documentsWithMissingCfop": self.documents_with_missing_cfop,
            "documentsWithMissingCst": self.documents_with_missing_cst,
            "documentsWithMissingNcm": self.documents_with_missing_ncm,
            "invalidCfopCount": self.invalid_cfop_count,
            "invalidCstCount": self.invalid_cst_count,
            "consistentIcmsCount": self.consistent_icms_count,
            "inconsistentIcmsCount": self.inconsistent_icms_count,
            "flaggedDocuments": self.flagged_documents,
        }


def _icms_observations(fields: IcmsFields, check: IcmsCheck, text: str) -> list[str]:
    if check.consistent is False:
        return [
            f"ICMS divergence: expected R$ {format_brl(check.expected)}, "
            f"reported R$ {format_brl(fields.reported)} "
            f"(difference R$ {format_brl(check.difference)})."
        ]
    if check.consistent is True:
        return []
    if fields.any_present:
        missing = [
            label
            for label, value in (("base", fields.base), ("rate", fields.rate), ("reported value", fields.reported))
            if value is None
        ]
        return [f"Incomplete ICMS data, cannot verify consistency: {', '.join(missing)} not found."]
    if ICMS_MENTION.search(text):
        return ["ICMS mentioned but no base, rate or value could be read."]
    return []


def analyze_document(file_name: str, text: str) -> FiscalDocumentCheck:
    """Run every fiscal rule against one document's text."""
    text = text or ""
    codes = extract_codes(text)
    fields = extract_icms_fields(text)
    check = check_icms_consistency(fields.base, fields.rate, fields.reported)

    doc = FiscalDocumentCheck(
        file_name=file_name,
        cfops=codes.cfops,
        csts=codes.csts,
        ncms=codes.ncms,
        invalid_cfops=codes.invalid_cfops,
        invalid_csts=codes.invalid_csts,
        icms_base=fields.base,
        icms_rate=fields.rate,
        icms_reported=fields.reported,
        icms_expected=check.expected,
        icms_difference=check.difference,
        icms_consistent=check.consistent,
    )

    if doc.missing_cfop:
        doc.observations.append("No CFOP found.")
    if codes.invalid_cfops:
        doc.observations.append(f"Invalid CFOP format: {', '.join(codes.invalid_cfops)}.")
    if doc.missing_cst:
        doc.observations.append("No CST found.")
    if codes.invalid_csts:
        doc.observations.append(f"Invalid CST format: {', '.join(codes.invalid_csts)}.")
    if doc.missing_ncm:
        doc.observations.append("No NCM found.")
    doc.observations.extend(_icms_observations(fields, check, text))

    return doc


def summarize_batch(documents: Iterable[FiscalDocumentCheck]) -> FiscalBatchSummary:
    summary = FiscalBatchSummary()
    for doc in documents:
        summary.documents_analyzed += 1
        summary.documents_with_missing_cfop += int(doc.missing_cfop)
        summary.documents_with_missing_cst += int(doc.missing_cst)
        summary.documents_with_missing_ncm += int(doc.missing_ncm)
        summary.invalid_cfop_count += len(doc.invalid_cfops)
        summary.invalid_cst_count += len(doc.invalid_csts)
        summary.consistent_icms_count += int(doc.icms_consistent is True)
        summary.inconsistent_icms_count += int(doc.icms_consistent is False)
        summary.flagged_documents += int(doc.flagged)
    return summary


def run_fiscal_checks(documents: Iterable[tuple[str, str]]) -> dict[str, Any]:
    """
    Check a batch of ``(file_name, text)`` pairs.

    Returns ``{"documents": [...], "summary": {...}}`` in wire form.
    """
    checks = [analyze_document(name, text) for name, text in documents]
    return {
        "documents": [doc.to_dict() for doc in checks],
        "summary": summarize_batch(checks).to_dict(),
    }
