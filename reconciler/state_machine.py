from __future__ import annotations

from typing import Final


class InvalidTransitionError(ValueError):
    pass


STAGE_ORDER: Final[tuple[str, ...]] = (
    "uploaded",
    "ocr",
    "type_validation",
    "extraction",
    "normalization",
    "validation",
    "completed",
)

TERMINAL_STAGES: Final[set[str]] = {"completed", "error", "validation_error"}

# Terminal stages only re-enter the pipeline through re-submission.
STAGE_TRANSITIONS: Final[dict[str, set[str]]] = {
    "uploaded": {"ocr", "error"},
    "ocr": {"type_validation", "error"},
    "type_validation": {"extraction", "error"},
    "extraction": {"normalization", "error"},
    "normalization": {"validation", "completed", "error"},
    "validation": {"completed", "validation_error"},
    "completed": {"uploaded"},
    "error": {"uploaded"},
    "validation_error": {"uploaded", "completed"},
}

STAGE_PROGRESS: Final[dict[str, int]] = {
    "uploaded": 10,
    "ocr": 30,
    "type_validation": 40,
    "extraction": 50,
    "normalization": 70,
    "validation": 90,
    "completed": 100,
    "validation_error": 95,
    "error": 0,
}

APPROVAL_TRANSITIONS: Final[dict[str, set[str]]] = {
    "Pending": {"Approved", "Rejected", "Escalated"},
    "Escalated": {"Pending", "Approved", "Rejected"},
    "Approved": set(),
    "Rejected": set(),
}


def _normalize_stage(value: str) -> str:
    return value.strip().lower()


def _normalize_approval(value: str) -> str:
    return value.strip().capitalize()


def _check(table: dict[str, set[str]], from_norm: str, to_norm: str, raw: tuple[str, str]) -> str:
    if from_norm not in table:
        raise InvalidTransitionError(f"Unknown state: {raw[0]}")
    if to_norm not in table:
        raise InvalidTransitionError(f"Unknown state: {raw[1]}")
    if to_norm not in table[from_norm]:
        raise InvalidTransitionError(f"Invalid transition: {from_norm} -> {to_norm}")
    return to_norm


def transition_stage(from_stage: str, to_stage: str) -> str:
    return _check(
        STAGE_TRANSITIONS,
        _normalize_stage(from_stage),
        _normalize_stage(to_stage),
        (from_stage, to_stage),
    )


def transition_approval(from_status: str, to_status: str) -> str:
    return _check(
        APPROVAL_TRANSITIONS,
        _normalize_approval(from_status),
        _normalize_approval(to_status),
        (from_status, to_status),
    )
