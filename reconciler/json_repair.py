from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Any, Final

TIER_PENALTIES: Final[dict[str, float]] = {
    "strict": 0.0,
    "quote_repair": 0.05,
    "bracket_repair": 0.1,
    "salvage": 0.3,
}

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


@dataclass(frozen=True)
class ParseOutcome:
    payload: dict[str, Any]
    tier: str
    penalty: float
    salvaged_fields: tuple[str, ...] = field(default_factory=tuple)

    @property
    def recovered_nothing(self) -> bool:
        return self.tier == "salvage" and not self.salvaged_fields


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def outer_object(text: str) -> str | None:
    """Slice from the first ``{`` to the last ``}``, or to the end when unclosed."""
    start = text.find("{")
    if start == -1:
        return None
    end = text.rfind("}")
    if end < start:
        return text[start:]
    return text[start : end + 1]


def _unescaped_quote_count(text: str) -> int:
    count = 0
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
        elif ch == '"':
            count += 1
    return count


def repair_quotes(text: str) -> str | None:
    """Close an unterminated string, then balance whatever is left open."""
    if _unescaped_quote_count(text) % 2 == 0:
        return None
    body = text.rstrip()
    # A trailing closer belongs after the string, so reopen it first.
    while body and body[-1] in "}]":
        body = body[:-1].rstrip()
    return balance_brackets(body + '"')


def balance_brackets(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()
    body = text.rstrip()
    if in_string:
        body += '"'
    # Dangling separators and keys with no value cannot be closed as-is.
    body = re.sub(r",\s*$", "", body)
    body = re.sub(r',?\s*"[^"\\]*"\s*:\s*$', "", body)
    if stack and stack[-1] == "}":
        body = re.sub(r',\s*"[^"\\]*"\s*$', "", body)
    body = re.sub(r",\s*([}\]])", r"\1", body)
    return body + "".join(reversed(stack))


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def salvage_fields(raw_text: str, field_names: tuple[str, ...]) -> dict[str, Any]:
    found: dict[str, Any] = {}
    for name in field_names:
        pattern = re.compile(
            rf'"{re.escape(name)}"\s*:\s*("(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?|true|false)'
        )
        match = pattern.search(raw_text)
        if not match:
            continue
        try:
            value = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if value not in (None, ""):
            found[name] = value
    return found


def parse_tolerant(
    raw_text: str,
    *,
    skeleton: dict[str, Any],
    salvage_keys: tuple[str, ...],
) -> ParseOutcome:
    """Parse model output, falling through increasingly lossy tiers.

    The salvage tier returns a deep copy of ``skeleton`` with whatever
    ``salvage_keys`` could be pulled out of the raw text by pattern match.
    """
    text = strip_code_fences(raw_text or "")
    candidate = outer_object(text)

    if candidate is not None:
        payload = _loads_object(candidate)
        if payload is not None:
            return ParseOutcome(payload, "strict", TIER_PENALTIES["strict"])

        quoted = repair_quotes(candidate)
        if quoted is not None:
            payload = _loads_object(quoted)
            if payload is not None:
                return ParseOutcome(payload, "quote_repair", TIER_PENALTIES["quote_repair"])

        payload = _loads_object(balance_brackets(candidate))
        if payload is not None:
            return ParseOutcome(payload, "bracket_repair", TIER_PENALTIES["bracket_repair"])

    salvaged = salvage_fields(text, salvage_keys)
    payload = copy.deepcopy(skeleton)
    payload.update(salvaged)
    return ParseOutcome(
        payload,
        "salvage",
        TIER_PENALTIES["salvage"],
        salvaged_fields=tuple(salvaged),
    )
