from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from reconciler.approval_workflow import ApprovalError
from reconciler.config import Settings
from reconciler.pipeline import PipelineServices, UploadRejectedError, build_services
from reconciler.state_machine import InvalidTransitionError
from reconciler.store import RecordNotFoundError
from reconciler.validation import ValidationRunError
from schemas.entities import InvoiceApprovalRequest

_APPROVAL_STATUS_CODES = {"invalid_state": 409, "no_level": 422, "invalid_decision": 400}


class DecisionRequest(BaseModel):
    decision: str
    actor: str
    comments: str | None = None
    rejection_reason: str | None = None


class ValidateRequest(BaseModel):
    actor: str = "api"


def create_app(
    *,
    settings: Settings | None = None,
    services: PipelineServices | None = None,
) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        services.worker.shutdown(wait=False)

    app = FastAPI(title="Contract Reconciler API", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(RecordNotFoundError)
    def not_found(_: Request, exc: RecordNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    def conflict(_: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(UploadRejectedError)
    def rejected(_: Request, exc: UploadRejectedError) -> JSONResponse:
        status_code = 413 if exc.code == "too_large" else 400
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(ApprovalError)
    def approval_failed(_: Request, exc: ApprovalError) -> JSONResponse:
        status_code = _APPROVAL_STATUS_CODES.get(exc.code, 400)
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})

    @app.exception_handler(ValidationRunError)
    def validation_failed(_: Request, exc: ValidationRunError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "code": exc.code})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/documents", status_code=202)
    def upload_document(
        file: UploadFile = File(...),
        document_type: str = Form(...),
        uploaded_by: str = Form("api"),
    ) -> dict[str, Any]:
        content = file.file.read()
        document = services.pipeline.upload(
            file.filename or "", content, document_type, uploaded_by=uploaded_by
        )
        return {"document_id": document.id, "stage": document.stage}

    @app.get("/documents/{document_id}/status")
    def document_status(document_id: str) -> dict[str, Any]:
        return services.pipeline.status(document_id)

    @app.post("/documents/{document_id}/reextract", status_code=202)
    def reextract(document_id: str) -> dict[str, Any]:
        job_id = services.pipeline.reextract(document_id)
        return {"document_id": document_id, "job_id": job_id}

    @app.post("/invoices/{invoice_id}/validate")
    def validate_invoice(invoice_id: str, body: ValidateRequest | None = None) -> dict[str, Any]:
        actor = body.actor if body else "api"
        validation_id = services.pipeline.revalidate(invoice_id, actor=actor)
        return {"invoice_id": invoice_id, "validation_id": validation_id}

    @app.get("/invoices/{invoice_id}/validation")
    def latest_validation(invoice_id: str) -> dict[str, Any]:
        validation = services.validator.latest_validation(invoice_id)
        if validation is None:
            raise RecordNotFoundError("validation", invoice_id)
        exceptions = services.validator.exceptions_for(validation.id)
        return {
            "validation": validation.model_dump(mode="json"),
            "exceptions": [e.model_dump(mode="json") for e in exceptions],
        }

    @app.get("/approvals/{approval_id}")
    def approval(approval_id: str) -> dict[str, Any]:
        request = services.store.require(InvoiceApprovalRequest, approval_id)
        history = services.approvals.history(approval_id)
        return {
            "approval": request.model_dump(mode="json"),
            "history": [h.model_dump(mode="json") for h in history],
        }

    @app.post("/approvals/{approval_id}/decision")
    def decide(approval_id: str, body: DecisionRequest) -> dict[str, Any]:
        request = services.approvals.decide(
            approval_id,
            body.decision,
            body.actor,
            comments=body.comments,
            rejection_reason=body.rejection_reason,
        )
        return request.model_dump(mode="json")

    @app.post("/approvals/escalate-overdue")
    def escalate_overdue() -> dict[str, Any]:
        escalated = services.approvals.escalate_overdue()
        return {"count": len(escalated), "escalated": escalated}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        counters = _aggregate_metrics(_read_jsonl(settings.metrics_path))
        counters["dead_letter_total"] = len(_read_jsonl(settings.dead_letter_path))
        counters["queue_pending_total"] = services.queue.pending_count()
        return counters

    @app.get("/failures")
    def failures(limit: int = 50) -> dict[str, Any]:
        items = _read_jsonl(settings.dead_letter_path)
        return {"count": len(items), "items": items[-limit:]}

    return app


def _read_jsonl(path: str | Path) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return []
    rows: list[dict[str, Any]] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        rows.append(json.loads(line))
    return rows


def _aggregate_metrics(events: list[dict[str, Any]]) -> dict[str, Any]:
    counters: dict[str, int] = {}
    for event in events:
        name = event.get("metric")
        value = event.get("value")
        if isinstance(name, str) and isinstance(value, int):
            counters[name] = counters.get(name, 0) + value
    return counters
