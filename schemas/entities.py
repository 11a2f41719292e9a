from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, ClassVar, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


DocumentType = Literal["contract", "invoice"]
Severity = Literal["High", "Medium", "Low"]
ValidationStatus = Literal["Passed", "Failed", "Partial"]
ApprovalStatus = Literal["Pending", "Approved", "Rejected", "Escalated"]
VarianceType = Literal["Absolute", "Percentage"]


class Record(BaseModel):
    """Base for everything persisted through the record store."""

    kind: ClassVar[str] = "record"
    # Append-only records are inserted once and never updated.
    append_only: ClassVar[bool] = False

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Document(Record):
    kind: ClassVar[str] = "document"

    original_filename: str
    stored_filename: str
    storage_path: str
    document_type: DocumentType
    content_hash: str
    file_size: int = Field(ge=0)
    stage: str = "uploaded"
    processing_error: str | None = None
    page_count: int | None = None
    detected_type: str | None = None
    detected_confidence: float | None = None
    entity_id: str | None = None
    uploaded_by: str = "system"


class Party(Record):
    kind: ClassVar[str] = "party"

    legal_name: str = Field(min_length=1)
    trading_name: str | None = None
    party_type: str | None = None
    tax_id: str | None = None
    duns_number: str | None = None
    npi_number: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class Location(Record):
    kind: ClassVar[str] = "location"

    location_code: str | None = None
    name: str
    location_type: str | None = None
    address: str | None = None


class Contract(Record):
    kind: ClassVar[str] = "contract"

    contract_number: str | None = None
    title: str
    contract_type: str = "Service Agreement"
    status: str = "Active"
    effective_date: date
    expiration_date: date
    currency: str = Field(default="USD", min_length=3, max_length=3)
    total_value: float | None = None
    payment_terms: dict[str, Any] = Field(default_factory=dict)
    source_document_id: str | None = None


class ContractParty(Record):
    kind: ClassVar[str] = "contract_party"

    contract_id: str
    party_id: str
    role: str = "Vendor"
    is_primary: bool = False


class ContractLocation(Record):
    kind: ClassVar[str] = "contract_location"

    contract_id: str
    location_id: str


class PricingModel(Record):
    kind: ClassVar[str] = "pricing_model"

    contract_id: str | None = None
    external_id: str | None = None
    name: str
    model_type: str | None = None
    base_rate: float | None = None
    currency: str = "USD"
    tiers: list[dict[str, Any]] = Field(default_factory=list)


class BillableItem(Record):
    kind: ClassVar[str] = "billable_item"

    contract_id: str
    pricing_model_id: str | None = None
    item_code: str | None = None
    name: str
    description: str | None = None
    list_price: float | None = None
    contract_price: float | None = None
    price_floor: float | None = None
    price_ceiling: float | None = None
    allowed_variance_type: VarianceType = "Absolute"
    allowed_variance: float = 0.0
    uom: str = "unit"
    currency: str = "USD"


class Invoice(Record):
    kind: ClassVar[str] = "invoice"

    invoice_number: str
    invoice_date: date
    due_date: date | None = None
    vendor_party_id: str
    customer_party_id: str | None = None
    contract_id: str | None = None
    gross_amount: float | None = None
    net_amount: float | None = None
    currency: str = "USD"
    location_id: str | None = None
    location_code: str | None = None
    service_start: date | None = None
    service_end: date | None = None
    current_status: str = "Received"
    validation_status: str = "Pending"
    requires_human_review: bool = False
    source_document_id: str | None = None


class InvoiceLineItem(Record):
    kind: ClassVar[str] = "invoice_line_item"

    invoice_id: str
    line_number: int = Field(ge=1)
    description: str | None = None
    item_code: str | None = None
    quantity: float | None = None
    unit_price: float | None = None
    extended_amount: float | None = None
    uom: str | None = None
    billable_item_id: str | None = None
    expected_unit_price: float | None = None
    price_variance: float | None = None
    within_tolerance: bool | None = None


class InvoiceValidation(Record):
    kind: ClassVar[str] = "invoice_validation"
    append_only: ClassVar[bool] = True
    model_config = ConfigDict(frozen=True)

    invoice_id: str
    contract_id: str | None = None
    status: ValidationStatus
    contract_matched: bool
    vendor_matched: bool
    all_items_matched: bool
    expected_amount: float
    actual_amount: float
    variance_amount: float
    potential_savings: float
    rules_applied_count: int
    exception_count: int
    validated_by: str = "system"


class ValidationException(Record):
    kind: ClassVar[str] = "validation_exception"

    validation_id: str
    invoice_id: str
    line_item_id: str | None = None
    exception_type: str
    category: str
    severity: Severity
    message: str
    expected_value: str | None = None
    actual_value: str | None = None
    variance: float | None = None
    financial_impact: float = 0.0
    resolved: bool = False


class ApprovalLevel(Record):
    kind: ClassVar[str] = "approval_level"

    level_name: str
    sequence: int = Field(ge=1)
    min_amount: float = Field(ge=0)
    max_amount: float | None = None
    required_role: str
    escalation_days: int = Field(ge=0)
    is_active: bool = True

    def covers(self, amount: float) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount < self.max_amount


class InvoiceApprovalRequest(Record):
    kind: ClassVar[str] = "approval_request"

    invoice_id: str
    validation_id: str
    approval_level_id: str
    status: ApprovalStatus = "Pending"
    assigned_role: str
    required_by: datetime
    escalation_count: int = 0
    total_amount: float = 0.0
    decided_by: str | None = None
    decided_at: datetime | None = None
    decision_comments: str | None = None
    rejection_reason: str | None = None


class ApprovalHistory(Record):
    kind: ClassVar[str] = "approval_history"
    append_only: ClassVar[bool] = True
    model_config = ConfigDict(frozen=True)

    approval_request_id: str
    from_status: ApprovalStatus | None = None
    to_status: ApprovalStatus
    approval_level_id: str | None = None
    actor: str
    comment: str | None = None


class ExtractionRecord(Record):
    kind: ClassVar[str] = "extraction"
    append_only: ClassVar[bool] = True
    model_config = ConfigDict(frozen=True)

    document_id: str
    document_type: DocumentType
    success: bool
    confidence: float
    parse_tier: str | None = None
    provider: str | None = None
    requires_human_review: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
