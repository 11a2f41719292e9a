from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable
from uuid import uuid4

from reconciler.extraction_checks import check_amount, check_vendor_name
from reconciler.normalization import add_years, parse_date
from schemas.extraction_schema import safe_float

UNKNOWN_VENDOR = "Unknown Vendor"
DEFAULT_CONTRACT_TYPE = "Service Agreement"

_AMOUNT = r"\$?\s*([\d,]+(?:\.\d{1,2})?)"

_REMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"(?:remit\s+(?:payment\s+)?to|payment\s+agent|make\s+(?:checks?|payments?)\s+payable\s+to)"
        r"\s*[:\-]?[ \t]*\n?[ \t]*([^\n]{3,120})",
        re.IGNORECASE,
    ),
)
_VENDOR_LABEL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:vendor|supplier|bill\s+from|from)\s*[:\-][ \t]*([^\n]{3,120})", re.IGNORECASE),
    re.compile(r"^[ \t]*([A-Z][^\n]{2,80}?)\s+invoice\b", re.IGNORECASE | re.MULTILINE),
)
_TOTAL_DUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"total\s+(?:account\s+)?balance\s+due\s*[:\-]?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"your\s+total\s+due\s*[:\-]?\s*{_AMOUNT}", re.IGNORECASE),
    re.compile(rf"total\s+due\s*[:\-]?\s*{_AMOUNT}", re.IGNORECASE),
)
_GENERIC_TOTAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"grand\s+total\s*[:\-]?\s*\$?\s*([\d,]+\.\d{2})", re.IGNORECASE),
    re.compile(r"amount\s+due\s*[:\-]?\s*\$?\s*([\d,]+\.\d{2})", re.IGNORECASE),
    re.compile(r"\btotal\s*[:\-]?\s*\$?\s*([\d,]+\.\d{2})", re.IGNORECASE),
)
_CURRENT_CHARGES_PATTERN = re.compile(
    r"current\s+(?:invoice\s+)?charges\s*[:\-]?\s*\$?\s*([\d,]+\.\d{2})",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class FallbackResult:
    data: dict[str, Any]
    warnings: list[str] = field(default_factory=list)


def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _default_id() -> str:
    return str(uuid4())


def _first_amount(patterns: tuple[re.Pattern[str], ...], text: str) -> float | None:
    for pattern in patterns:
        for match in pattern.finditer(text):
            amount = safe_float(match.group(1))
            if amount is not None and amount > 0:
                return amount
    return None


def vendor_from_text(text: str) -> str | None:
    """Find a vendor name in raw text, remit-to clauses first."""
    for group in (_REMIT_PATTERNS, _VENDOR_LABEL_PATTERNS):
        for pattern in group:
            for match in pattern.finditer(text):
                candidate = match.group(1).strip().strip(",;:.-").strip()
                if check_vendor_name(candidate).valid:
                    return candidate
    return None


def total_from_text(text: str) -> float | None:
    return _first_amount(_TOTAL_DUE_PATTERNS, text)


def generic_total_from_text(text: str) -> float | None:
    return _first_amount(_GENERIC_TOTAL_PATTERNS, text)


def line_items_total(items: Any) -> float | None:
    if not isinstance(items, list):
        return None
    total = 0.0
    for item in items:
        if not isinstance(item, dict):
            continue
        extended = safe_float(item.get("extended_amount"))
        if extended is None:
            unit = safe_float(item.get("unit_price"))
            quantity = safe_float(item.get("quantity"), 1.0)
            extended = unit * quantity if unit is not None and quantity is not None else None
        if extended is not None:
            total += extended
    return round(total, 2) if total > 0 else None


def apply_contract_fallbacks(
    data: dict[str, Any],
    *,
    today: date,
    id_factory: Callable[[], str] = _default_id,
) -> FallbackResult:
    out = copy.deepcopy(data)
    warnings: list[str] = []
    number = out.get("contract_number")

    if _missing(out.get("contract_id")):
        if not _missing(number):
            out["contract_id"] = str(number).strip()
            warnings.append("contract_id missing; used the external contract number")
        else:
            out["contract_id"] = id_factory()
            warnings.append("contract_id missing; generated a new identifier")

    if _missing(out.get("effective_date")):
        out["effective_date"] = today.isoformat()
        warnings.append("effective_date missing; defaulted to today")

    if _missing(out.get("expiration_date")):
        start = parse_date(out["effective_date"]) or today
        out["expiration_date"] = add_years(start, 1).isoformat()
        warnings.append("expiration_date missing; defaulted to effective_date + 1 year")

    if _missing(out.get("contract_title")):
        if not _missing(number):
            out["contract_title"] = f"Contract {str(number).strip()}"
        else:
            out["contract_title"] = f"Contract dated {out['effective_date']}"
        warnings.append("contract_title missing; synthesized from contract number/date")

    if _missing(out.get("contract_type")):
        out["contract_type"] = DEFAULT_CONTRACT_TYPE
        warnings.append(f"contract_type missing; defaulted to {DEFAULT_CONTRACT_TYPE}")

    return FallbackResult(out, warnings)


def apply_invoice_fallbacks(
    data: dict[str, Any],
    *,
    source_text: str,
    today: date,
    id_factory: Callable[[], str] = _default_id,
) -> FallbackResult:
    out = copy.deepcopy(data)
    warnings: list[str] = []

    if _missing(out.get("invoice_id")):
        out["invoice_id"] = "INV-" + id_factory().replace("-", "")[:8].upper()
        warnings.append("invoice_id missing; generated a placeholder identifier")

    if _missing(out.get("invoice_date")):
        out["invoice_date"] = today.isoformat()
        warnings.append("invoice_date missing; defaulted to today")

    vendor = out.get("vendor_party_id")
    if isinstance(vendor, str) and len(vendor.strip()) > 200:
        vendor = vendor.strip().splitlines()[0].strip()
        out["vendor_party_id"] = vendor
    if not check_vendor_name(vendor).valid:
        recovered = vendor_from_text(source_text)
        if recovered is not None:
            out["vendor_party_id"] = recovered
            warnings.append("vendor_party_id missing or invalid; recovered from document text")
        else:
            out["vendor_party_id"] = UNKNOWN_VENDOR
            warnings.append(f"vendor_party_id missing or invalid; defaulted to {UNKNOWN_VENDOR}")

    if not check_amount(out.get("total_amount")).valid:
        total = total_from_text(source_text)
        source = "total due text"
        if total is None:
            total = line_items_total(out.get("line_items"))
            source = "sum of line items"
        if total is None:
            total = generic_total_from_text(source_text)
            source = "generic total text"
        if total is None:
            total = 0.0
            source = "zero"
        out["total_amount"] = total
        warnings.append(f"total_amount missing or invalid; recovered from {source}")

    if safe_float(out.get("net_amount")) is None:
        match = _CURRENT_CHARGES_PATTERN.search(source_text)
        if match:
            out["net_amount"] = safe_float(match.group(1))
            warnings.append("net_amount missing; recovered from current charges text")

    return FallbackResult(out, warnings)
