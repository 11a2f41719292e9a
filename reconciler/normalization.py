from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

_DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%m/%d/%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_CODE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/#-]*$")

MAX_IDENTIFIER_LENGTH = 64
MAX_SEARCH_TERM_LENGTH = 200


def round_money(value: float | None) -> float | None:
    if value is None:
        return None
    return round(value, 2)


def parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def add_years(value: date, years: int) -> date:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return value.replace(year=value.year + years, day=28)


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value.strip()))


def looks_like_identifier(value: Any) -> bool:
    """True for UUIDs and short whitespace-free codes such as ``MSA-2024-001``."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text or len(text) > MAX_IDENTIFIER_LENGTH:
        return False
    return is_uuid(text) or bool(_CODE_RE.match(text))


def clean_search_term(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip()
    if len(text) > MAX_SEARCH_TERM_LENGTH:
        text = text.splitlines()[0].strip()[:100]
    text = re.sub(r"\s+", " ", text)
    return text or None


def normalize_currency(value: Any, default: str = "USD") -> str:
    text = str(value or "").strip().upper()
    if text in {"$", "US$", "USD$"}:
        return "USD"
    if len(text) == 3 and text.isalpha():
        return text
    return default


def normalize_uom(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None
