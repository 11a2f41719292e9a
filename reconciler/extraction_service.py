from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Protocol

import requests
from pydantic import ValidationError

from reconciler.extraction_checks import HeaderCheck, check_contract_header, check_invoice_header
from reconciler.fallbacks import FallbackResult, apply_contract_fallbacks, apply_invoice_fallbacks
from reconciler.json_repair import ParseOutcome, parse_tolerant
from reconciler.retry_utils import RetryExhaustedError, RetryPolicy, run_with_retry
from reconciler.review_queue import decide_review_status
from schemas.extraction_schema import (
    ContractExtraction,
    InvoiceExtraction,
    parse_extraction_payload,
    safe_float,
)

logger = logging.getLogger(__name__)

EXTRACTION_VERSION = "1.0"
TYPE_SAMPLE_CHARS = 10_000
DEFAULT_MODEL_CONFIDENCE = 0.9
DEFAULT_TYPE_CONFIDENCE = 0.5
FALLBACK_PENALTY = 0.1
NO_USABLE_DATA = "Extraction returned no usable data"

_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504, 529}


class CompletionClient(Protocol):
    def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        """Return raw model text intended to be one JSON object."""


class ExtractionError(RuntimeError):
    def __init__(
        self,
        message: str,
        code: str = "extraction_failed",
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


SYSTEM_PROMPT = "You extract data from business documents. Return strict JSON only. No markdown or prose."

TYPE_PROMPT = (
    "Classify this document as contract, invoice or other. Respond with "
    '{"document_type": "...", "confidence": 0.0-1.0, "reasoning": "..."}.\n\n'
    "Document:\n"
)

CONTRACT_PROMPT = (
    "Extract the contract into one JSON object with keys: contract_id, contract_number, "
    "contract_title, contract_type, effective_date, expiration_date (YYYY-MM-DD), currency, "
    "total_value, payment_terms, parties[{legal_name, role, tax_id, duns_number, address}], "
    "locations[{location_code, name, address}], pricing_models[{name, model_type, base_rate, "
    "currency}], billable_items[{item_code, name, description, pricing_model, list_price, "
    "contract_price, price_floor, price_ceiling, allowed_variance_type (Absolute|Percentage), "
    "allowed_variance, uom, currency}], metadata{overall_confidence}. Use null for unknown "
    "values.\n\nDocument:\n"
)

INVOICE_PROMPT = (
    "Extract the invoice into one JSON object with keys: invoice_id, invoice_date, due_date, "
    "vendor_party_id (vendor legal name), vendor_tax_id, customer_name, contract_reference, "
    "currency, total_amount, net_amount, location_code, service_period_start, "
    "service_period_end, line_items[{line_number, item_code, description, quantity, "
    "unit_price, extended_amount, uom}], metadata{overall_confidence}. Use null for unknown "
    "values.\n\nDocument:\n"
)

CONTRACT_SKELETON: dict[str, Any] = {
    "contract_id": None,
    "contract_number": None,
    "contract_title": None,
    "effective_date": None,
    "expiration_date": None,
    "currency": None,
    "parties": [],
    "billable_items": [],
}

INVOICE_SKELETON: dict[str, Any] = {
    "invoice_id": None,
    "invoice_date": None,
    "vendor_party_id": None,
    "total_amount": None,
    "currency": None,
    "line_items": [],
}

_CONTRACT_ALIASES: dict[str, tuple[str, ...]] = {
    "contract_number": ("contract_number", "erp_contract_number", "external_ids.erp_contract_number"),
    "contract_title": ("contract_title", "title"),
}

_INVOICE_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_id": ("invoice_id", "invoice_number"),
    "vendor_party_id": ("vendor_party_id", "vendor_name", "vendor"),
    "total_amount": ("total_amount", "total", "amount_due"),
}

_MONEY_RE = re.compile(r"\$\s?([0-9OoIlS][0-9OoIlS,]*(?:\.[0-9OoIlS]{2})?)")
_DIGIT_FIXES = str.maketrans({"O": "0", "o": "0", "I": "1", "l": "1", "S": "5"})


@dataclass(frozen=True)
class TypeDetection:
    type: str
    confidence: float
    reasoning: str | None = None


@dataclass(frozen=True)
class ExtractionResult:
    success: bool
    data: ContractExtraction | InvoiceExtraction | None
    confidence: float
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    requires_human_review: bool = False


def prepare_text(text: str) -> str:
    """Normalise whitespace and undo common OCR digit confusions in amounts."""

    def _fix(match: re.Match[str]) -> str:
        token = match.group(1)
        if not re.search(r"\d", token):
            return match.group(0)
        return "$" + token.translate(_DIGIT_FIXES)

    lines = [re.sub(r"[ \t\f\v]+", " ", line).strip() for line in text.splitlines()]
    joined = re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
    return _MONEY_RE.sub(_fix, joined)


def _nested_get(data: dict[str, Any], path: str) -> Any:
    cur: Any = data
    for key in path.split("."):
        if not isinstance(cur, dict) or key not in cur:
            return None
        cur = cur[key]
    return cur


def _apply_aliases(data: dict[str, Any], aliases: dict[str, tuple[str, ...]]) -> dict[str, Any]:
    out = dict(data)
    for target, candidates in aliases.items():
        if out.get(target) not in (None, ""):
            continue
        for alias in candidates:
            value = _nested_get(data, alias) if "." in alias else data.get(alias)
            if value not in (None, ""):
                out[target] = value
                break
    return out


def _flatten_invoice(data: dict[str, Any]) -> dict[str, Any]:
    nested = _nested_get(data, "validation_request.invoice_data")
    source = nested if isinstance(nested, dict) else data
    header = source.get("invoice_header")
    if not isinstance(header, dict):
        return data
    flat = {k: v for k, v in data.items() if k != "validation_request"}
    flat.update(header)
    if "line_items" in source:
        flat["line_items"] = source["line_items"]
    return flat


def _base_confidence(data: dict[str, Any]) -> float:
    for key in ("metadata.overall_confidence", "confidence"):
        value = safe_float(_nested_get(data, key) if "." in key else data.get(key))
        if value is not None:
            return max(0.0, min(value, 1.0))
    return DEFAULT_MODEL_CONFIDENCE


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, TimeoutError, ConnectionError)):
        return True
    return getattr(exc, "status_code", None) in _TRANSIENT_STATUS


class AnthropicClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str = "https://api.anthropic.com/v1",
        timeout: int = 60,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        response = requests.post(
            f"{self._base_url}/messages",
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json={
                "model": self._model,
                "max_tokens": max_tokens,
                "system": system,
                "messages": [{"role": "user", "content": prompt}],
            },
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise ExtractionError(
                f"Anthropic request failed with status {response.status_code}: {response.text[:300]}",
                code="provider_request_failed",
                status_code=response.status_code,
            )
        blocks = response.json().get("content", [])
        text = "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text.strip():
            raise ExtractionError("Anthropic returned empty content", code="empty_response")
        return text


class OpenAICompatibleClient:
    def __init__(self, *, api_key: str, model: str, base_url: str | None = None) -> None:
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise RuntimeError("openai package is required for OpenAI extraction") from exc
        self._model = model
        self._client = OpenAI(api_key=api_key, base_url=base_url) if base_url else OpenAI(api_key=api_key)

    def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        response = self._client.chat.completions.create(
            model=self._model,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        )
        text = response.choices[0].message.content
        if not text:
            raise ExtractionError("OpenAI returned empty response", code="empty_response")
        return text


class MultiProviderClient:
    def __init__(self, providers: list[tuple[str, CompletionClient]]) -> None:
        self._providers = providers
        self.last_provider: str | None = None

    def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        errors: list[str] = []
        transient = False
        for provider_name, client in self._providers:
            try:
                text = client.complete(system, prompt, max_tokens)
            except Exception as exc:  # noqa: BLE001
                transient = transient or _is_transient(exc)
                errors.append(f"{provider_name}: {exc}")
                logger.warning("Provider %s failed, trying next: %s", provider_name, exc)
                continue
            self.last_provider = provider_name
            return text
        raise ExtractionError(
            "All configured providers failed: " + "; ".join(errors),
            code="all_providers_failed",
            status_code=503 if transient else None,
        )


def _provider_model(provider: str, model_name: str) -> str:
    if model_name and model_name != "auto":
        return model_name
    defaults = {
        "anthropic": os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest"),
        "openai": os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
    }
    return defaults.get(provider, "gpt-4o-mini")


def _client_for_provider(provider: str, model_name: str) -> CompletionClient | None:
    normalized = provider.strip().lower()
    if normalized == "anthropic":
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            return None
        return AnthropicClient(api_key=api_key, model=_provider_model(normalized, model_name))
    if normalized == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            return None
        return OpenAICompatibleClient(
            api_key=api_key,
            model=_provider_model(normalized, model_name),
            base_url=os.getenv("OPENAI_BASE_URL") or None,
        )
    raise ExtractionError(f"Unsupported provider: {provider}", code="unsupported_provider")


def build_default_client(provider: str, model_name: str = "auto") -> tuple[CompletionClient, str]:
    normalized = provider.strip().lower()
    if normalized == "auto":
        order = os.getenv("EXTRACTION_PROVIDER_ORDER", "anthropic,openai").split(",")
        providers: list[tuple[str, CompletionClient]] = []
        for name in [x.strip().lower() for x in order if x.strip()]:
            client = _client_for_provider(name, model_name)
            if client is not None:
                providers.append((name, client))
        if not providers:
            raise ExtractionError(
                "No provider API key found for configured fallback chain",
                code="missing_api_key",
            )
        return MultiProviderClient(providers), "auto"

    client = _client_for_provider(normalized, model_name)
    if client is None:
        raise ExtractionError(f"Missing API key for provider: {normalized}", code="missing_api_key")
    return client, normalized


class ExtractionGateway:
    """Type detection and schema extraction over an unreliable completion API."""

    def __init__(
        self,
        client: CompletionClient | None = None,
        *,
        provider: str = "anthropic",
        model_name: str = "auto",
        provider_name: str | None = None,
        review_threshold: float = 0.7,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        today_fn: Callable[[], date] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._client = client
        self._provider = provider
        self._model_name = model_name
        self._provider_name = provider_name or ("custom" if client is not None else provider)
        self._review_threshold = review_threshold
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_seconds=1.0)
        self._sleep_fn = sleep_fn
        self._today_fn = today_fn or (lambda: datetime.now(timezone.utc).date())
        self._id_factory = id_factory
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any) -> "ExtractionGateway":
        return cls(
            provider=settings.extraction_provider,
            model_name=settings.extraction_model,
            review_threshold=settings.review_confidence_threshold,
        )

    def _active_client(self) -> CompletionClient:
        with self._lock:
            if self._client is None:
                self._client, self._provider_name = build_default_client(
                    self._provider, self._model_name
                )
            return self._client

    def _call(self, prompt: str, max_tokens: int) -> str:
        client = self._active_client()
        try:
            return run_with_retry(
                lambda: client.complete(SYSTEM_PROMPT, prompt, max_tokens),
                should_retry=_is_transient,
                policy=self._retry_policy,
                sleep_fn=self._sleep_fn,
            )
        except RetryExhaustedError as exc:
            cause = exc.__cause__
            code = "provider_unavailable"
            if not exc.retryable:
                code = getattr(cause, "code", "provider_request_failed")
            raise ExtractionError(
                f"Extraction provider call failed after {exc.attempts} attempt(s): {cause}",
                code=code,
            ) from cause

    def detect_type(self, text: str) -> TypeDetection:
        raw = self._call(TYPE_PROMPT + text[:TYPE_SAMPLE_CHARS], max_tokens=256)
        outcome = parse_tolerant(
            raw,
            skeleton={"document_type": None, "confidence": None},
            salvage_keys=("document_type", "confidence"),
        )
        label = str(outcome.payload.get("document_type") or "").strip().lower()
        if label in {"contract", "agreement"}:
            detected = "contract"
        elif label in {"invoice", "bill"}:
            detected = "invoice"
        else:
            detected = "other"
        confidence = safe_float(outcome.payload.get("confidence"), DEFAULT_TYPE_CONFIDENCE)
        reasoning = outcome.payload.get("reasoning")
        return TypeDetection(
            type=detected,
            confidence=max(0.0, min(float(confidence), 1.0)),
            reasoning=reasoning if isinstance(reasoning, str) else None,
        )

    def extract_contract(self, text: str, *, total_pages: int | None = None) -> ExtractionResult:
        return self._extract("contract", text, total_pages)

    def extract_invoice(self, text: str, *, total_pages: int | None = None) -> ExtractionResult:
        return self._extract("invoice", text, total_pages)

    def _extract(self, kind: str, text: str, total_pages: int | None) -> ExtractionResult:
        prepared = prepare_text(text)
        today = self._today_fn()
        if kind == "contract":
            raw = self._call(CONTRACT_PROMPT + prepared, max_tokens=8192)
            outcome = parse_tolerant(
                raw,
                skeleton=CONTRACT_SKELETON,
                salvage_keys=tuple(CONTRACT_SKELETON) + ("erp_contract_number", "title"),
            )
        else:
            raw = self._call(INVOICE_PROMPT + prepared, max_tokens=8192)
            outcome = parse_tolerant(
                raw,
                skeleton=INVOICE_SKELETON,
                salvage_keys=tuple(INVOICE_SKELETON) + ("invoice_number", "vendor_name", "net_amount"),
            )

        metadata: dict[str, Any] = {
            "extraction_version": EXTRACTION_VERSION,
            "extracted_at": datetime.now(timezone.utc).isoformat(),
            "detected_type": kind,
            "total_pages": total_pages,
            "parse_tier": outcome.tier,
            "provider": self._provider_name,
        }
        if outcome.recovered_nothing:
            logger.warning("%s extraction recovered no fields from model output", kind)
            return ExtractionResult(
                success=False,
                data=None,
                confidence=0.0,
                errors=[NO_USABLE_DATA],
                metadata={**metadata, "overall_confidence": 0.0, "requires_human_review": True},
                requires_human_review=True,
            )

        base = _base_confidence(outcome.payload)
        fallback, header = self._recover(kind, outcome, prepared, today)
        try:
            model = parse_extraction_payload(kind, fallback.data)
        except ValidationError as exc:
            raise ExtractionError(
                f"Extracted {kind} payload failed schema validation: {exc}",
                code="invalid_payload",
            ) from exc

        confidence = base - FALLBACK_PENALTY * len(fallback.warnings) - outcome.penalty
        confidence = round(max(0.0, min(confidence * (1.0 - header.penalty), 1.0)), 4)
        decision = decide_review_status(
            is_valid=header.valid,
            model_confidence=confidence,
            confidence_threshold=self._review_threshold,
            header_penalty=header.penalty,
        )

        warnings = list(fallback.warnings) + list(header.warnings)
        if outcome.tier != "strict":
            warnings.insert(0, f"Model output required {outcome.tier} parsing")
        metadata.update(
            {
                "overall_confidence": confidence,
                "requires_human_review": decision.requires_review,
                "review_reasons": list(decision.reason_codes),
                "fallbacks": list(fallback.warnings),
                "validation_errors": list(header.errors),
                "validation_warnings": list(header.warnings),
            }
        )
        envelope = {k: v for k, v in metadata.items() if k != "review_reasons"}
        model = model.model_copy(update={"metadata": model.metadata.model_copy(update=envelope)})
        return ExtractionResult(
            success=True,
            data=model,
            confidence=confidence,
            errors=list(header.errors),
            warnings=warnings,
            metadata=metadata,
            requires_human_review=decision.requires_review,
        )

    def _recover(
        self,
        kind: str,
        outcome: ParseOutcome,
        text: str,
        today: date,
    ) -> tuple[FallbackResult, HeaderCheck]:
        id_kwargs = {"id_factory": self._id_factory} if self._id_factory else {}
        if kind == "contract":
            data = _apply_aliases(outcome.payload, _CONTRACT_ALIASES)
            fallback = apply_contract_fallbacks(data, today=today, **id_kwargs)
            return fallback, check_contract_header(fallback.data, today=today)
        data = _apply_aliases(_flatten_invoice(outcome.payload), _INVOICE_ALIASES)
        fallback = apply_invoice_fallbacks(data, source_text=text, today=today, **id_kwargs)
        return fallback, check_invoice_header(fallback.data, today=today)
