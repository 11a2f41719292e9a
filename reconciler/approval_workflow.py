from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Final

from reconciler.logger import log_event
from reconciler.metrics import MetricsCollector
from reconciler.state_machine import InvalidTransitionError, transition_approval
from reconciler.store import RecordStore, StaleRecordError
from schemas.entities import (
    ApprovalHistory,
    ApprovalLevel,
    Invoice,
    InvoiceApprovalRequest,
    ValidationException,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_LEVELS: Final[tuple[dict[str, Any], ...]] = (
    {
        "level_name": "AP Clerk",
        "sequence": 1,
        "min_amount": 0,
        "max_amount": 1000,
        "required_role": "AP Clerk",
        "escalation_days": 3,
    },
    {
        "level_name": "Department Head",
        "sequence": 2,
        "min_amount": 1000,
        "max_amount": 10000,
        "required_role": "Department Head",
        "escalation_days": 3,
    },
    {
        "level_name": "Finance Admin",
        "sequence": 3,
        "min_amount": 10000,
        "max_amount": None,
        "required_role": "Finance Admin",
        "escalation_days": 5,
    },
)

DECISIONS: Final[set[str]] = {"Approve", "Reject", "Escalate"}
APPROVAL_SEVERITIES: Final[set[str]] = {"High", "Medium"}
TERMINAL_ESCALATION_COMMENT = "Escalated to highest level - requires manual intervention"


class ApprovalError(RuntimeError):
    def __init__(self, message: str, code: str = "approval_failed") -> None:
        super().__init__(message)
        self.code = code


def load_approval_levels(path: str | Path) -> list[dict[str, Any]]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    levels = payload.get("levels") if isinstance(payload, dict) else payload
    if not isinstance(levels, list) or not levels:
        raise ValueError(f"Approval level file {path} must contain a non-empty list of levels")
    internal = {"id", "created_at", "updated_at"}
    return [ApprovalLevel.model_validate(level).model_dump(exclude=internal) for level in levels]


class ApprovalWorkflow:
    """Amount-tiered approval routing with deadline-driven escalation."""

    def __init__(
        self,
        store: RecordStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._metrics = metrics

    def seed_levels(self, levels: list[dict[str, Any]] | None = None) -> list[ApprovalLevel]:
        """Insert any configured level whose sequence is not stored yet."""
        existing = {level.sequence for level in self._store.find(ApprovalLevel)}
        created: list[ApprovalLevel] = []
        for spec in levels or list(DEFAULT_APPROVAL_LEVELS):
            level = ApprovalLevel.model_validate(spec)
            if level.sequence in existing:
                continue
            created.append(self._store.insert(level))
            existing.add(level.sequence)
        return created

    def active_levels(self) -> list[ApprovalLevel]:
        levels = self._store.find(ApprovalLevel, lambda level: level.is_active)
        return sorted(levels, key=lambda level: level.sequence)

    def select_level(self, amount: float) -> ApprovalLevel:
        matching = [level for level in self.active_levels() if level.covers(amount)]
        if not matching:
            raise ApprovalError(f"No approval level covers amount {amount:.2f}", code="no_level")
        return max(matching, key=lambda level: level.sequence)

    def _next_level(self, current: ApprovalLevel | None) -> ApprovalLevel | None:
        floor = current.sequence if current is not None else 0
        higher = [level for level in self.active_levels() if level.sequence > floor]
        return higher[0] if higher else None

    def _record(
        self,
        request: InvoiceApprovalRequest,
        from_status: str | None,
        to_status: str,
        actor: str,
        comment: str | None,
    ) -> None:
        self._store.insert(
            ApprovalHistory(
                approval_request_id=request.id,
                from_status=from_status,
                to_status=to_status,
                approval_level_id=request.approval_level_id,
                actor=actor,
                comment=comment,
            )
        )

    def _guarded_update(
        self, request: InvoiceApprovalRequest, read: InvoiceApprovalRequest
    ) -> InvoiceApprovalRequest:
        try:
            return self._store.update(
                request,
                expected={"status": read.status, "escalation_count": read.escalation_count},
            )
        except StaleRecordError as exc:
            raise ApprovalError(
                f"Approval request {request.id} was changed concurrently; reload and retry",
                code="invalid_state",
            ) from exc

    def history(self, approval_id: str) -> list[ApprovalHistory]:
        return self._store.find(ApprovalHistory, lambda h: h.approval_request_id == approval_id)

    def _set_invoice_status(self, invoice_id: str, status: str) -> None:
        invoice = self._store.get(Invoice, invoice_id)
        if invoice is not None and invoice.current_status != status:
            self._store.update(invoice.model_copy(update={"current_status": status}))

    def create_request(
        self,
        invoice_id: str,
        validation_id: str,
        actor: str = "system",
    ) -> str | None:
        """Open an approval request when the validation left High/Medium exceptions.

        Returns the request id, or ``None`` when no approval is needed. Calling
        it twice for the same validation returns the existing request.
        """
        existing = self._store.find_one(
            InvoiceApprovalRequest,
            lambda r: r.invoice_id == invoice_id and r.validation_id == validation_id,
        )
        if existing is not None:
            return existing.id

        open_exceptions = self._store.find(
            ValidationException,
            lambda e: e.validation_id == validation_id and not e.resolved,
        )
        if not any(e.severity in APPROVAL_SEVERITIES for e in open_exceptions):
            return None

        amount = round(sum(e.financial_impact for e in open_exceptions), 2)
        level = self.select_level(amount)
        now = self._clock()
        request = self._store.insert(
            InvoiceApprovalRequest(
                invoice_id=invoice_id,
                validation_id=validation_id,
                approval_level_id=level.id,
                assigned_role=level.required_role,
                required_by=now + timedelta(days=level.escalation_days),
                total_amount=amount,
            )
        )
        self._record(request, None, "Pending", actor, f"Approval request created for {amount:.2f} in exceptions")
        self._set_invoice_status(invoice_id, "Pending Approval")
        log_event(
            logger,
            logging.INFO,
            f"Approval request routed to {level.level_name}",
            approval_id=request.id,
            invoice_id=invoice_id,
            outcome="created",
        )
        return request.id

    def escalate(
        self,
        approval_id: str,
        actor: str = "system",
        comment: str | None = None,
        *,
        now: datetime | None = None,
    ) -> InvoiceApprovalRequest:
        request = self._store.require(InvoiceApprovalRequest, approval_id, fresh=True)
        if request.status != "Pending":
            raise ApprovalError(
                f"Only pending requests can be escalated (status {request.status})",
                code="invalid_state",
            )
        current = self._store.get(ApprovalLevel, request.approval_level_id)
        target = self._next_level(current)
        transition_approval(request.status, "Escalated")

        if target is None:
            escalated = self._guarded_update(
                request.model_copy(
                    update={"status": "Escalated", "escalation_count": request.escalation_count + 1}
                ),
                request,
            )
            self._record(escalated, "Pending", "Escalated", actor, comment or TERMINAL_ESCALATION_COMMENT)
            outcome = "escalated_terminal"
        else:
            transition_approval("Escalated", "Pending")
            escalated = self._guarded_update(
                request.model_copy(
                    update={
                        "status": "Pending",
                        "approval_level_id": target.id,
                        "assigned_role": target.required_role,
                        "required_by": (now or self._clock()) + timedelta(days=target.escalation_days),
                        "escalation_count": request.escalation_count + 1,
                    }
                ),
                request,
            )
            self._record(escalated, "Pending", "Escalated", actor, comment or f"Escalated to {target.level_name}")
            self._record(escalated, "Escalated", "Pending", actor, f"Reassigned to {target.required_role}")
            outcome = "escalated"

        if self._metrics is not None:
            self._metrics.increment("approvals_escalated_total", stage="approval")
        log_event(
            logger,
            logging.INFO,
            "Approval request escalated",
            approval_id=approval_id,
            invoice_id=request.invoice_id,
            outcome=outcome,
        )
        return escalated

    def escalate_overdue(self, now: datetime | None = None) -> list[str]:
        """Escalate every pending request past its deadline; safe to re-run."""
        cutoff = now or self._clock()
        overdue = self._store.find(
            InvoiceApprovalRequest,
            lambda r: r.status == "Pending" and r.required_by < cutoff,
            fresh=True,
        )
        escalated: list[str] = []
        for request in overdue:
            try:
                self.escalate(request.id, actor="system", now=cutoff)
            except ApprovalError as exc:
                # Decided or escalated by someone else since the scan.
                logger.info("Skipping approval %s during sweep: %s", request.id, exc)
                continue
            escalated.append(request.id)
        logger.info("Escalation sweep escalated %d request(s)", len(escalated))
        return escalated

    def decide(
        self,
        approval_id: str,
        decision: str,
        actor: str,
        comments: str | None = None,
        rejection_reason: str | None = None,
    ) -> InvoiceApprovalRequest:
        normalized = decision.strip().capitalize()
        if normalized not in DECISIONS:
            raise ApprovalError(
                f"Decision must be one of: {', '.join(sorted(DECISIONS))}",
                code="invalid_decision",
            )
        if normalized == "Escalate":
            return self.escalate(approval_id, actor=actor, comment=comments)

        request = self._store.require(InvoiceApprovalRequest, approval_id, fresh=True)
        target = "Approved" if normalized == "Approve" else "Rejected"
        try:
            transition_approval(request.status, target)
        except InvalidTransitionError as exc:
            raise ApprovalError(str(exc), code="invalid_state") from exc

        decided = self._guarded_update(
            request.model_copy(
                update={
                    "status": target,
                    "decided_by": actor,
                    "decided_at": self._clock(),
                    "decision_comments": comments,
                    "rejection_reason": rejection_reason if target == "Rejected" else None,
                }
            ),
            request,
        )
        comment = comments
        if target == "Rejected" and rejection_reason:
            comment = f"{comments or 'Rejected'} (reason: {rejection_reason})"
        self._record(decided, request.status, target, actor, comment)
        self._set_invoice_status(request.invoice_id, target)
        log_event(
            logger,
            logging.INFO,
            f"Approval request {target.lower()}",
            approval_id=approval_id,
            invoice_id=request.invoice_id,
            outcome=target.lower(),
        )
        return decided
