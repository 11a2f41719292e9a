from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Final

from reconciler.normalization import is_uuid, parse_date
from schemas.extraction_schema import safe_float

HEADER_WEIGHTS: Final[dict[str, float]] = {
    "vendor": 0.3,
    "invoice_number": 0.2,
    "invoice_date": 0.2,
    "total_amount": 0.3,
}

CONTRACT_WEIGHTS: Final[dict[str, float]] = {
    "contract_title": 0.2,
    "effective_date": 0.3,
    "expiration_date": 0.3,
    "currency": 0.2,
}

_VENDOR_INVALID_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"^\d+$"),
    re.compile(r"^[\W_]+$"),
    re.compile(r"\binvoice\s*(?:#|no\.?|number)\b", re.IGNORECASE),
    re.compile(r"^(?:page|date|total|amount|balance|due)\b", re.IGNORECASE),
    re.compile(r"https?://|www\.", re.IGNORECASE),
    re.compile(r"\$\s*\d"),
)

_VENDOR_FALSE_POSITIVES: Final[set[str]] = {
    "invoice",
    "bill to",
    "ship to",
    "sold to",
    "remit to",
    "total",
    "amount",
    "date",
    "page",
    "vendor",
    "supplier",
    "customer",
    "n/a",
    "na",
    "none",
    "null",
    "unknown",
}

_INVOICE_NUMBER_FALSE_POSITIVES: Final[set[str]] = {
    "invoice",
    "number",
    "no",
    "n/a",
    "none",
    "null",
    "unknown",
    "tbd",
    "date",
    "total",
}

MIN_AMOUNT = 0.01
MAX_AMOUNT = 1_000_000_000.0


@dataclass(frozen=True)
class FieldCheck:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def penalty(self) -> float:
        if not self.valid:
            return 1.0
        return min(0.2 * len(self.warnings), 1.0)


@dataclass(frozen=True)
class HeaderCheck:
    valid: bool
    penalty: float
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def check_vendor_name(value: Any) -> FieldCheck:
    if not isinstance(value, str) or not value.strip():
        return FieldCheck(False, ("Vendor name is missing",))
    name = value.strip()
    if is_uuid(name):
        return FieldCheck(True)
    if len(name) < 3:
        return FieldCheck(False, (f"Vendor name too short: {name!r}",))
    if len(name) > 200:
        return FieldCheck(False, ("Vendor name longer than 200 characters",))
    if name.lower().rstrip(":") in _VENDOR_FALSE_POSITIVES:
        return FieldCheck(False, (f"Vendor name looks like a label: {name!r}",))
    if not re.search(r"[A-Za-z]", name):
        return FieldCheck(False, (f"Vendor name has no letters: {name!r}",))
    for pattern in _VENDOR_INVALID_PATTERNS:
        if pattern.search(name):
            return FieldCheck(False, (f"Vendor name has an invalid shape: {name!r}",))
    warnings: list[str] = []
    if "\n" in name:
        warnings.append("Vendor name spans multiple lines")
    if name.isupper() and len(name) > 60:
        warnings.append("Vendor name is long and all caps")
    return FieldCheck(True, warnings=tuple(warnings))


def check_amount(value: Any, field_name: str = "total_amount") -> FieldCheck:
    amount = safe_float(value)
    if amount is None:
        return FieldCheck(False, (f"{field_name} is missing or not a number",))
    if amount == 0:
        return FieldCheck(True, warnings=(f"{field_name} is zero",))
    if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        return FieldCheck(False, (f"{field_name} out of range: {amount}",))
    if amount < 10:
        return FieldCheck(True, warnings=(f"{field_name} is unusually small: {amount}",))
    return FieldCheck(True)


def check_date(value: Any, *, today: date, field_name: str = "invoice_date") -> FieldCheck:
    parsed = parse_date(value)
    if parsed is None:
        return FieldCheck(False, (f"{field_name} is missing or unparseable",))
    if parsed.year < today.year - 10 or parsed.year > today.year + 5:
        return FieldCheck(False, (f"{field_name} year {parsed.year} is implausible",))
    warnings: list[str] = []
    if parsed > today + timedelta(days=30):
        warnings.append(f"{field_name} is more than 30 days in the future")
    if parsed < today - timedelta(days=5 * 365):
        warnings.append(f"{field_name} is more than 5 years old")
    return FieldCheck(True, warnings=tuple(warnings))


def check_invoice_number(value: Any) -> FieldCheck:
    if not isinstance(value, str) or not value.strip():
        return FieldCheck(False, ("Invoice number is missing",))
    number = value.strip()
    if number.lower().strip("#:. ") in _INVOICE_NUMBER_FALSE_POSITIVES:
        return FieldCheck(False, (f"Invoice number looks like a label: {number!r}",))
    if len(number) > 64:
        return FieldCheck(False, ("Invoice number longer than 64 characters",))
    if not re.search(r"[A-Za-z0-9]", number):
        return FieldCheck(False, (f"Invoice number has no alphanumerics: {number!r}",))
    return FieldCheck(True)


def _combine(checks: dict[str, FieldCheck], weights: dict[str, float]) -> HeaderCheck:
    errors: list[str] = []
    warnings: list[str] = []
    penalty = 0.0
    for name, check in checks.items():
        errors.extend(check.errors)
        warnings.extend(check.warnings)
        penalty += weights.get(name, 0.0) * check.penalty
    return HeaderCheck(
        valid=not errors,
        penalty=round(min(penalty, 1.0), 4),
        errors=errors,
        warnings=warnings,
    )


def check_invoice_header(data: dict[str, Any], *, today: date) -> HeaderCheck:
    return _combine(
        {
            "vendor": check_vendor_name(data.get("vendor_party_id")),
            "invoice_number": check_invoice_number(data.get("invoice_id")),
            "invoice_date": check_date(data.get("invoice_date"), today=today),
            "total_amount": check_amount(data.get("total_amount")),
        },
        HEADER_WEIGHTS,
    )


def check_contract_header(data: dict[str, Any], *, today: date) -> HeaderCheck:
    checks: dict[str, FieldCheck] = {}
    title = data.get("contract_title")
    if isinstance(title, str) and title.strip():
        checks["contract_title"] = FieldCheck(True)
    else:
        checks["contract_title"] = FieldCheck(False, ("Contract title is missing",))

    effective = parse_date(data.get("effective_date"))
    expiration = parse_date(data.get("expiration_date"))
    if effective is None:
        checks["effective_date"] = FieldCheck(False, ("effective_date is missing or unparseable",))
    else:
        checks["effective_date"] = FieldCheck(True)
    if expiration is None:
        checks["expiration_date"] = FieldCheck(False, ("expiration_date is missing or unparseable",))
    elif effective is not None and expiration <= effective:
        checks["expiration_date"] = FieldCheck(False, ("expiration_date must be after effective_date",))
    elif expiration < today:
        checks["expiration_date"] = FieldCheck(True, warnings=("Contract has already expired",))
    else:
        checks["expiration_date"] = FieldCheck(True)

    currency = str(data.get("currency") or "")
    checks["currency"] = (
        FieldCheck(True)
        if len(currency) == 3 and currency.isalpha()
        else FieldCheck(True, warnings=(f"Currency code {currency!r} is not ISO-4217 shaped",))
    )
    return _combine(checks, CONTRACT_WEIGHTS)
