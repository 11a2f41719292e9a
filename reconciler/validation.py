from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

from reconciler.approval_workflow import ApprovalError, ApprovalWorkflow
from reconciler.logger import log_event
from reconciler.store import RecordNotFoundError, RecordStore
from reconciler.validation_rules import (
    Rule,
    RuleContext,
    RuleResult,
    check_currency,
    check_date_range,
    check_location,
    check_price,
    check_quantity,
    check_uom,
    check_vendor,
    contract_price_for,
)
from schemas.entities import (
    BillableItem,
    Contract,
    ContractLocation,
    ContractParty,
    Invoice,
    InvoiceLineItem,
    InvoiceValidation,
    Severity,
    ValidationException,
    new_id,
)

logger = logging.getLogger(__name__)

RULES_APPLIED_COUNT: Final[int] = 7


class ValidationRunError(RuntimeError):
    def __init__(
        self,
        message: str,
        code: str = "validation_failed",
        *,
        validation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        # Set when the run was persisted before the failure.
        self.validation_id = validation_id


@dataclass(frozen=True)
class RuleSpec:
    rule: Rule
    exception_type: str
    category: str
    severity: Severity


INVOICE_RULES: Final[tuple[RuleSpec, ...]] = (
    RuleSpec(check_vendor, "Vendor Mismatch", "Party Validation", "High"),
    RuleSpec(check_currency, "Currency Mismatch", "Currency Validation", "High"),
    RuleSpec(check_date_range, "Date Range Invalid", "Date Validation", "Medium"),
    RuleSpec(check_location, "Location Not Authorized", "Location Validation", "High"),
)

PRICE_RULE: Final = RuleSpec(check_price, "Price Variance", "Pricing Validation", "Medium")
QUANTITY_RULE: Final = RuleSpec(check_quantity, "Invalid Quantity", "Quantity Validation", "Low")
UOM_RULE: Final = RuleSpec(check_uom, "UOM Mismatch", "UOM Validation", "Medium")


def _text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


class ValidationOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        *,
        approvals: ApprovalWorkflow | None = None,
        price_high_threshold: float = 1000.0,
    ) -> None:
        self._store = store
        self._approvals = approvals
        self._price_high_threshold = price_high_threshold

    def run_validation(self, invoice_id: str, actor: str = "system") -> str:
        try:
            return self._run(invoice_id, actor)
        except RecordNotFoundError:
            raise
        except Exception as exc:
            if getattr(exc, "validation_id", None) is None:
                self._mark_error(invoice_id)
            log_event(
                logger,
                logging.ERROR,
                f"Validation failed: {exc}",
                invoice_id=invoice_id,
                stage="validation",
                outcome="error",
            )
            if isinstance(exc, ValidationRunError):
                raise
            raise ValidationRunError(str(exc)) from exc

    def _mark_error(self, invoice_id: str) -> None:
        invoice = self._store.get(Invoice, invoice_id)
        if invoice is not None:
            self._store.update(invoice.model_copy(update={"validation_status": "Error"}))

    def _exception(
        self,
        spec: RuleSpec,
        result: RuleResult,
        *,
        validation_id: str,
        invoice_id: str,
        line_item_id: str | None = None,
        severity: Severity | None = None,
        financial_impact: float = 0.0,
    ) -> ValidationException:
        return ValidationException(
            validation_id=validation_id,
            invoice_id=invoice_id,
            line_item_id=line_item_id,
            exception_type=spec.exception_type,
            category=spec.category,
            severity=severity or spec.severity,
            message=result.message,
            expected_value=_text(result.expected_value),
            actual_value=_text(result.actual_value),
            variance=result.variance,
            financial_impact=round(financial_impact, 2),
        )

    def _run(self, invoice_id: str, actor: str) -> str:
        invoice = self._store.require(Invoice, invoice_id)
        actual = invoice.net_amount if invoice.net_amount is not None else invoice.gross_amount
        if actual is None:
            raise ValidationRunError(
                f"Invoice {invoice.invoice_number} has no net or gross amount",
                code="missing_amount",
            )

        validation_id = new_id()
        contract = self._store.get(Contract, invoice.contract_id) if invoice.contract_id else None
        lines = sorted(
            self._store.find(InvoiceLineItem, lambda li: li.invoice_id == invoice_id),
            key=lambda li: li.line_number,
        )
        exceptions: list[ValidationException] = []
        vendor_matched = False
        unit_variance_total = 0.0
        matched_lines = 0
        party_ids: frozenset[str] = frozenset()
        location_ids: frozenset[str] = frozenset()

        if contract is None:
            exceptions.append(
                ValidationException(
                    validation_id=validation_id,
                    invoice_id=invoice_id,
                    exception_type="Contract Not Matched",
                    category="Contract Matching",
                    severity="High",
                    message="No contract could be matched to this invoice",
                    actual_value=_text(actual),
                )
            )
        else:
            party_ids = frozenset(
                cp.party_id
                for cp in self._store.find(ContractParty, lambda cp: cp.contract_id == contract.id)
            )
            location_ids = frozenset(
                cl.location_id
                for cl in self._store.find(ContractLocation, lambda cl: cl.contract_id == contract.id)
            )
            base = RuleContext(
                invoice=invoice,
                contract=contract,
                contract_party_ids=party_ids,
                contract_location_ids=location_ids,
            )
            for spec in INVOICE_RULES:
                result = spec.rule(base)
                if spec.rule is check_vendor:
                    vendor_matched = result.passed
                if not result.passed:
                    exceptions.append(
                        self._exception(spec, result, validation_id=validation_id, invoice_id=invoice_id)
                    )

        expected_total = 0.0
        for line in lines:
            item = self._store.get(BillableItem, line.billable_item_id) if line.billable_item_id else None
            ctx = RuleContext(
                invoice=invoice,
                contract=contract,
                line_item=line,
                billable_item=item,
                contract_party_ids=party_ids,
                contract_location_ids=location_ids,
            )
            quantity = line.quantity if line.quantity is not None else 1.0

            qty_result = QUANTITY_RULE.rule(ctx)
            if not qty_result.passed:
                exceptions.append(
                    self._exception(
                        QUANTITY_RULE, qty_result, validation_id=validation_id,
                        invoice_id=invoice_id, line_item_id=line.id,
                    )
                )

            if item is None:
                exceptions.append(
                    ValidationException(
                        validation_id=validation_id,
                        invoice_id=invoice_id,
                        line_item_id=line.id,
                        exception_type="Item Not Matched",
                        category="Item Matching",
                        severity="Medium",
                        message=f"Line {line.line_number} ({line.description or line.item_code}) "
                        "could not be matched to a contract billable item",
                        actual_value=line.description or line.item_code,
                        financial_impact=round(abs(line.extended_amount or 0.0), 2),
                    )
                )
                continue

            matched_lines += 1
            contract_price = contract_price_for(item)
            if contract_price is not None:
                expected_total += contract_price * quantity

            price_result = PRICE_RULE.rule(ctx)
            if price_result.variance is not None:
                self._store.update(
                    line.model_copy(
                        update={
                            "expected_unit_price": contract_price,
                            "price_variance": price_result.variance,
                            "within_tolerance": price_result.passed,
                        }
                    )
                )
            if not price_result.passed:
                # Severity follows the per-unit variance; the extended amount drives approval routing.
                unit_variance = abs(price_result.variance or 0.0)
                unit_variance_total += unit_variance
                severity: Severity = "High" if unit_variance > self._price_high_threshold else "Medium"
                exceptions.append(
                    self._exception(
                        PRICE_RULE, price_result, validation_id=validation_id,
                        invoice_id=invoice_id, line_item_id=line.id,
                        severity=severity, financial_impact=unit_variance * abs(quantity),
                    )
                )

            uom_result = UOM_RULE.rule(ctx)
            if not uom_result.passed:
                exceptions.append(
                    self._exception(
                        UOM_RULE, uom_result, validation_id=validation_id,
                        invoice_id=invoice_id, line_item_id=line.id,
                    )
                )

        expected = round(actual if contract is None else expected_total, 2)
        variance = round(actual - expected, 2)
        savings = round(max(variance, 0.0) + unit_variance_total, 2)
        status = "Passed" if not exceptions else "Failed"

        validation = InvoiceValidation(
            id=validation_id,
            invoice_id=invoice_id,
            contract_id=contract.id if contract else None,
            status=status,
            contract_matched=contract is not None,
            vendor_matched=vendor_matched,
            all_items_matched=bool(lines) and matched_lines == len(lines),
            expected_amount=expected,
            actual_amount=round(actual, 2),
            variance_amount=variance,
            potential_savings=savings,
            rules_applied_count=RULES_APPLIED_COUNT,
            exception_count=len(exceptions),
            validated_by=actor,
        )
        self._store.insert(validation)
        for exc in exceptions:
            self._store.insert(exc)

        routing_error: ApprovalError | None = None
        if self._approvals is not None and any(
            e.severity in {"High", "Medium"} and not e.resolved for e in exceptions
        ):
            try:
                self._approvals.create_request(invoice_id, validation_id, actor)
            except ApprovalError as exc:
                routing_error = exc

        invoice = self._store.require(Invoice, invoice_id)
        self._store.update(invoice.model_copy(update={"validation_status": status}))
        log_event(
            logger,
            logging.INFO,
            f"Validation {status} with {len(exceptions)} exception(s)",
            invoice_id=invoice_id,
            stage="validation",
            outcome=status.lower(),
        )
        if routing_error is not None:
            # The run itself is recorded; only the approval request is missing.
            raise ValidationRunError(
                f"Approval routing failed: {routing_error}",
                code="approval_routing_failed",
                validation_id=validation_id,
            ) from routing_error
        return validation_id

    def latest_validation(self, invoice_id: str) -> InvoiceValidation | None:
        runs = self._store.find(InvoiceValidation, lambda v: v.invoice_id == invoice_id)
        return runs[-1] if runs else None

    def exceptions_for(self, validation_id: str) -> list[ValidationException]:
        return self._store.find(ValidationException, lambda e: e.validation_id == validation_id)
