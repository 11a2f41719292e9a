from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


def safe_float(value: Any, default: float | None = None) -> float | None:
    """Parse amounts like ``"$1,250.00"`` or ``"(40.00)"``; bad input gives ``default``."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return default
    negative = text.startswith("(") and text.endswith(")")
    cleaned = re.sub(r"[^0-9.\-]", "", text.replace(",", ""))
    if cleaned in {"", "-", ".", "-."}:
        return default
    try:
        number = float(cleaned)
    except ValueError:
        return default
    return -abs(number) if negative else number


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ExtractionMetadata(_Lenient):
    extraction_version: str = "1.0"
    extracted_at: str | None = None
    overall_confidence: float | None = None
    detected_type: str | None = None
    total_pages: int | None = None
    parse_tier: str | None = None
    provider: str | None = None
    requires_human_review: bool = False
    fallbacks: list[str] = Field(default_factory=list)
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)

    @field_validator("overall_confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float | None:
        number = safe_float(value)
        if number is None:
            return None
        return max(0.0, min(number, 1.0))

    @field_validator("total_pages", mode="before")
    @classmethod
    def _pages(cls, value: Any) -> int | None:
        number = safe_float(value)
        return int(number) if number is not None and number >= 0 else None


class PartyExtraction(_Lenient):
    party_id: str | None = None
    legal_name: str | None = None
    trading_name: str | None = None
    role: str = "Vendor"
    tax_id: str | None = None
    duns_number: str | None = None
    npi_number: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None

    @field_validator(
        "party_id",
        "legal_name",
        "trading_name",
        "tax_id",
        "duns_number",
        "npi_number",
        "email",
        "phone",
        "address",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, value: Any) -> str:
        return (_as_text(value) or "Vendor").title()


class LocationExtraction(_Lenient):
    location_id: str | None = None
    location_code: str | None = None
    name: str | None = None
    location_type: str | None = None
    address: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)


class PricingModelExtraction(_Lenient):
    pricing_model_id: str | None = None
    name: str | None = None
    model_type: str | None = None
    base_rate: float | None = None
    currency: str | None = None
    tiers: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("pricing_model_id", "name", "model_type", "currency", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator("base_rate", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("tiers", mode="before")
    @classmethod
    def _tiers(cls, value: Any) -> list[dict[str, Any]]:
        return _as_list(value)


class BillableItemExtraction(_Lenient):
    billable_item_id: str | None = None
    item_code: str | None = None
    name: str | None = None
    description: str | None = None
    pricing_model: str | None = None
    list_price: float | None = None
    contract_price: float | None = None
    price_floor: float | None = None
    price_ceiling: float | None = None
    allowed_variance_type: str | None = None
    allowed_variance: float | None = None
    uom: str | None = None
    currency: str | None = None

    @field_validator(
        "billable_item_id",
        "item_code",
        "name",
        "description",
        "pricing_model",
        "allowed_variance_type",
        "uom",
        "currency",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator(
        "list_price",
        "contract_price",
        "price_floor",
        "price_ceiling",
        "allowed_variance",
        mode="before",
    )
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return safe_float(value)


class LineItemExtraction(_Lenient):
    line_number: int | None = None
    item_code: str | None = None
    description: str | None = None
    quantity: float | None = None
    unit_price: float | None = None
    extended_amount: float | None = None
    uom: str | None = None

    @field_validator("item_code", "description", "uom", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator("quantity", "unit_price", "extended_amount", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("line_number", mode="before")
    @classmethod
    def _line_number(cls, value: Any) -> int | None:
        number = safe_float(value)
        return int(number) if number is not None and number >= 1 else None


class ContractExtraction(_Lenient):
    document_kind: Literal["contract"] = "contract"
    contract_id: str | None = None
    contract_number: str | None = None
    contract_title: str | None = None
    contract_type: str | None = None
    effective_date: str | None = None
    expiration_date: str | None = None
    currency: str | None = None
    total_value: float | None = None
    payment_terms: dict[str, Any] = Field(default_factory=dict)
    parties: list[PartyExtraction] = Field(default_factory=list)
    locations: list[LocationExtraction] = Field(default_factory=list)
    pricing_models: list[PricingModelExtraction] = Field(default_factory=list)
    billable_items: list[BillableItemExtraction] = Field(default_factory=list)
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)

    @field_validator(
        "contract_id",
        "contract_number",
        "contract_title",
        "contract_type",
        "effective_date",
        "expiration_date",
        "currency",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator("total_value", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("payment_terms", mode="before")
    @classmethod
    def _terms(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @field_validator("parties", "locations", "pricing_models", "billable_items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> list[dict[str, Any]]:
        return _as_list(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


class InvoiceExtraction(_Lenient):
    document_kind: Literal["invoice"] = "invoice"
    invoice_id: str | None = None
    invoice_date: str | None = None
    due_date: str | None = None
    vendor_party_id: str | None = None
    vendor_tax_id: str | None = None
    customer_name: str | None = None
    contract_reference: str | None = None
    currency: str | None = None
    total_amount: float | None = None
    net_amount: float | None = None
    location_code: str | None = None
    service_period_start: str | None = None
    service_period_end: str | None = None
    line_items: list[LineItemExtraction] = Field(default_factory=list)
    metadata: ExtractionMetadata = Field(default_factory=ExtractionMetadata)

    @field_validator(
        "invoice_id",
        "invoice_date",
        "due_date",
        "vendor_party_id",
        "vendor_tax_id",
        "customer_name",
        "contract_reference",
        "currency",
        "location_code",
        "service_period_start",
        "service_period_end",
        mode="before",
    )
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _as_text(value)

    @field_validator("total_amount", "net_amount", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("line_items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> list[dict[str, Any]]:
        return _as_list(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


ExtractionPayload = Annotated[
    Union[ContractExtraction, InvoiceExtraction],
    Field(discriminator="document_kind"),
]

_PAYLOAD_ADAPTER: TypeAdapter[ContractExtraction | InvoiceExtraction] = TypeAdapter(ExtractionPayload)


def parse_extraction_payload(
    document_kind: str, payload: dict[str, Any]
) -> ContractExtraction | InvoiceExtraction:
    return _PAYLOAD_ADAPTER.validate_python({**payload, "document_kind": document_kind})
