from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ReviewDecision:
    requires_review: bool
    reason_codes: tuple[str, ...]


def decide_review_status(
    is_valid: bool,
    model_confidence: float,
    *,
    confidence_threshold: float = 0.7,
    header_penalty: float = 0.0,
    max_header_penalty: float = 0.5,
) -> ReviewDecision:
    """Decide whether an extraction must be looked at by a person.

    Failing any post-hoc field check, confidence below the threshold, or a
    header penalty above ``max_header_penalty`` each add a reason code.
    """
    reasons: list[str] = []
    if not is_valid:
        reasons.append("field_validation_failed")
    if model_confidence < confidence_threshold:
        reasons.append("low_confidence")
    if header_penalty > max_header_penalty:
        reasons.append("header_penalty")
    return ReviewDecision(requires_review=bool(reasons), reason_codes=tuple(reasons))
