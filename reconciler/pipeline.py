from __future__ import annotations

import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Final, TypeVar
from uuid import uuid4

from reconciler.approval_workflow import ApprovalWorkflow, load_approval_levels
from reconciler.cache import TTLCache
from reconciler.config import Settings
from reconciler.dead_letter import DeadLetterStore
from reconciler.entity_normalizer import EntityNormalizer
from reconciler.extraction_service import ExtractionGateway, ExtractionResult
from reconciler.logger import log_document_event
from reconciler.metrics import JsonlMetricsSink, MetricsCollector
from reconciler.ocr import OcrResult, extract_text
from reconciler.state_machine import (
    STAGE_PROGRESS,
    TERMINAL_STAGES,
    InvalidTransitionError,
    transition_stage,
)
from reconciler.store import RecordStore, SqliteRecordStore
from reconciler.task_queue import TaskQueue
from reconciler.validation import ValidationOrchestrator, ValidationRunError
from schemas.entities import Document, ExtractionRecord, Invoice
from schemas.extraction_schema import ContractExtraction, InvoiceExtraction

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOCUMENT_TYPES: Final[set[str]] = {"contract", "invoice"}

STAGE_ERROR_PREFIX: Final[dict[str, str]] = {
    "ocr": "OCR failed",
    "type_validation": "Document type detection failed",
    "extraction": "Extraction failed",
    "normalization": "Normalization failed",
}


class UploadRejectedError(ValueError):
    def __init__(self, message: str, code: str = "upload_rejected") -> None:
        super().__init__(message)
        self.code = code


class StageFailure(RuntimeError):
    def __init__(self, stage: str, message: str, code: str = "stage_failed") -> None:
        super().__init__(message)
        self.stage = stage
        self.code = code


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def type_mismatch_message(detected: str, declared: str) -> str | None:
    if detected not in DOCUMENT_TYPES:
        return (
            "The uploaded document does not appear to be a contract or invoice. "
            "Please upload a valid contract or invoice document."
        )
    if detected != declared:
        return (
            f"The uploaded document appears to be a {detected}, but you selected {declared}. "
            "Please verify and try again."
        )
    return None


class DocumentPipeline:
    """Runs one document through ocr -> type check -> extraction -> normalization -> validation."""

    def __init__(
        self,
        store: RecordStore,
        queue: TaskQueue,
        gateway: ExtractionGateway,
        normalizer: EntityNormalizer,
        validator: ValidationOrchestrator,
        *,
        upload_dir: str | Path = "data/uploads",
        dead_letter: DeadLetterStore | None = None,
        metrics: MetricsCollector | None = None,
        max_upload_bytes: int = 50 * 1024 * 1024,
        allowed_extensions: tuple[str, ...] = (".pdf", ".doc", ".docx"),
        text_extractor: Callable[[str | Path], OcrResult] = extract_text,
    ) -> None:
        self._store = store
        self._queue = queue
        self._gateway = gateway
        self._normalizer = normalizer
        self._validator = validator
        self._upload_dir = Path(upload_dir)
        self._dead_letter = dead_letter or DeadLetterStore()
        self._metrics = metrics or MetricsCollector()
        self._max_upload_bytes = max_upload_bytes
        self._allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)
        self._text_extractor = text_extractor
        # Set by the worker so new jobs start draining without a poll delay.
        self.on_enqueue: Callable[[], None] | None = None

    # Entry points

    def upload(
        self,
        filename: str,
        content: bytes,
        declared_type: str,
        uploaded_by: str = "system",
    ) -> Document:
        declared = (declared_type or "").strip().lower()
        if declared not in DOCUMENT_TYPES:
            raise UploadRejectedError(
                "Document type must be 'contract' or 'invoice'", code="invalid_type"
            )
        suffix = Path(filename or "").suffix.lower()
        if suffix not in self._allowed_extensions:
            raise UploadRejectedError(
                f"Unsupported file type {suffix or '(none)'}; allowed: "
                f"{', '.join(self._allowed_extensions)}",
                code="unsupported_type",
            )
        if len(content) > self._max_upload_bytes:
            raise UploadRejectedError(
                f"File exceeds the {self._max_upload_bytes // (1024 * 1024)}MB upload limit",
                code="too_large",
            )

        self._upload_dir.mkdir(parents=True, exist_ok=True)
        stored_filename = f"{uuid4().hex}{suffix}"
        path = self._upload_dir / stored_filename
        path.write_bytes(content)
        document = self._store.insert(
            Document(
                original_filename=Path(filename).name,
                stored_filename=stored_filename,
                storage_path=str(path),
                document_type=declared,
                content_hash=_sha256(path),
                file_size=len(content),
                uploaded_by=uploaded_by,
            )
        )
        self._metrics.increment("documents_uploaded_total", stage="uploaded")
        log_document_event(logger, logging.INFO, "Document uploaded", document_id=document.id, stage="uploaded")
        self.submit(document.id)
        return document

    def submit(self, document_id: str) -> str:
        document = self._store.require(Document, document_id, fresh=True)
        if document.stage in TERMINAL_STAGES:
            self._move(document, "uploaded", processing_error=None)
        job_id = self._queue.enqueue(document_id)
        if self.on_enqueue is not None:
            self.on_enqueue()
        return job_id

    def reextract(self, document_id: str) -> str:
        document = self._store.require(Document, document_id, fresh=True)
        if document.stage not in TERMINAL_STAGES and document.stage != "uploaded":
            raise InvalidTransitionError(
                f"Document {document_id} is still processing (stage {document.stage})"
            )
        return self.submit(document_id)

    def revalidate(self, invoice_id: str, actor: str = "system") -> str:
        validation_id = self._validator.run_validation(invoice_id, actor)
        invoice = self._store.require(Invoice, invoice_id)
        if invoice.source_document_id:
            document = self._store.get(Document, invoice.source_document_id)
            if document is not None and document.stage == "validation_error":
                self._move(document, "completed", processing_error=None)
        return validation_id

    def status(self, document_id: str) -> dict[str, Any]:
        document = self._store.require(Document, document_id, fresh=True)
        return {
            "document_id": document.id,
            "stage": document.stage,
            "progress": STAGE_PROGRESS.get(document.stage, 0),
            "error": document.processing_error,
        }

    # Stages

    def _move(self, document: Document, stage: str, **updates: Any) -> Document:
        transition_stage(document.stage, stage)
        return self._store.update(document.model_copy(update={"stage": stage, **updates}))

    def _run_stage(self, document: Document, stage: str, operation: Callable[[], T]) -> tuple[Document, T]:
        document = self._move(document, stage)
        started = time.perf_counter()
        try:
            result = operation()
        except StageFailure:
            raise
        except Exception as exc:
            prefix = STAGE_ERROR_PREFIX.get(stage, "Processing failed")
            raise StageFailure(stage, f"{prefix}: {exc}", code=getattr(exc, "code", "stage_failed")) from exc
        latency_ms = int((time.perf_counter() - started) * 1000)
        self._metrics.observe_latency(stage, latency_ms)
        log_document_event(
            logger, logging.INFO, f"Stage {stage} finished",
            document_id=document.id, stage=stage, latency_ms=latency_ms, outcome="ok",
        )
        return document, result

    def process(self, document_id: str) -> Document:
        document = self._store.require(Document, document_id, fresh=True)
        if document.stage in TERMINAL_STAGES:
            log_document_event(
                logger, logging.INFO, "Document already finished; skipping",
                document_id=document_id, stage=document.stage, outcome="skipped",
            )
            return document
        if document.stage != "uploaded":
            # A worker died mid-run; stages are safe to repeat from the start.
            log_document_event(
                logger, logging.WARNING, f"Restarting document interrupted at {document.stage}",
                document_id=document_id, stage=document.stage, outcome="restarted",
            )
            document = self._store.update(document.model_copy(update={"stage": "uploaded"}))

        try:
            return self._run_stages(document)
        except StageFailure as failure:
            return self._fail(document_id, failure)

    def _run_stages(self, document: Document) -> Document:
        document, ocr = self._run_stage(document, "ocr", lambda: self._text_extractor(document.storage_path))
        document = self._store.update(document.model_copy(update={"page_count": ocr.total_pages}))

        document, detection = self._run_stage(
            document, "type_validation", lambda: self._gateway.detect_type(ocr.text)
        )
        document = self._store.update(
            document.model_copy(
                update={"detected_type": detection.type, "detected_confidence": detection.confidence}
            )
        )
        mismatch = type_mismatch_message(detection.type, document.document_type)
        if mismatch is not None:
            raise StageFailure("type_validation", mismatch, code="type_mismatch")

        document, result = self._run_stage(document, "extraction", lambda: self._extract(document, ocr))
        data = result.data

        document, entity_id = self._run_stage(document, "normalization", lambda: self._normalize(document, data, result))
        document = self._store.update(document.model_copy(update={"entity_id": entity_id}))

        if document.document_type == "contract":
            return self._complete(document)

        document = self._move(document, "validation")
        started = time.perf_counter()
        try:
            self._validator.run_validation(entity_id, actor=document.uploaded_by)
        except ValidationRunError as exc:
            self._metrics.increment("documents_validation_error_total", stage="validation")
            log_document_event(
                logger, logging.WARNING, "Validation failed; entities kept",
                document_id=document.id, stage="validation", outcome="validation_error", invoice_id=entity_id,
            )
            message = f"Validation failed: {exc}"
            self._dead_letter.write_failure(
                {
                    "document_id": document.id,
                    "invoice_id": entity_id,
                    "status": "FAILED",
                    "stage": "validation",
                    "error_code": exc.code,
                    "error_message": message,
                    "content_hash": document.content_hash,
                    "original_filename": document.original_filename,
                }
            )
            return self._move(document, "validation_error", processing_error=message)
        self._metrics.observe_latency("validation", int((time.perf_counter() - started) * 1000))
        return self._complete(document)

    def _extract(self, document: Document, ocr: OcrResult) -> ExtractionResult:
        if document.document_type == "contract":
            result = self._gateway.extract_contract(ocr.text, total_pages=ocr.total_pages)
        else:
            result = self._gateway.extract_invoice(ocr.text, total_pages=ocr.total_pages)
        self._store.insert(
            ExtractionRecord(
                document_id=document.id,
                document_type=document.document_type,
                success=result.success,
                confidence=result.confidence,
                parse_tier=result.metadata.get("parse_tier"),
                provider=result.metadata.get("provider"),
                requires_human_review=result.requires_human_review,
                errors=list(result.errors),
                warnings=list(result.warnings),
                payload=result.data.model_dump(mode="json") if result.data is not None else {},
            )
        )
        if result.requires_human_review:
            self._metrics.increment("extractions_review_total", stage="extraction")
        if not result.success or result.data is None:
            raise StageFailure(
                "extraction",
                f"{STAGE_ERROR_PREFIX['extraction']}: {'; '.join(result.errors) or 'no data returned'}",
                code="no_usable_data",
            )
        return result

    def _normalize(
        self,
        document: Document,
        data: ContractExtraction | InvoiceExtraction | None,
        result: ExtractionResult,
    ) -> str:
        if isinstance(data, ContractExtraction):
            return self._normalizer.normalize_contract(data, source_document_id=document.id)
        if isinstance(data, InvoiceExtraction):
            invoice_id = self._normalizer.normalize_invoice(data, source_document_id=document.id)
            invoice = self._store.require(Invoice, invoice_id)
            if invoice.requires_human_review != result.requires_human_review:
                self._store.update(
                    invoice.model_copy(update={"requires_human_review": result.requires_human_review})
                )
            return invoice_id
        raise TypeError(f"Unexpected extraction payload: {type(data).__name__}")

    def _complete(self, document: Document) -> Document:
        document = self._move(document, "completed", processing_error=None)
        self._metrics.increment("documents_completed_total", stage="completed")
        log_document_event(
            logger, logging.INFO, "Document processed",
            document_id=document.id, stage="completed", outcome="completed",
        )
        return document

    def _fail(self, document_id: str, failure: StageFailure) -> Document:
        document = self._store.require(Document, document_id)
        failed = self._move(document, "error", processing_error=str(failure))
        self._metrics.increment("documents_failed_total", stage=failure.stage)
        self._dead_letter.write_failure(
            {
                "document_id": document_id,
                "status": "FAILED",
                "stage": failure.stage,
                "error_code": failure.code,
                "error_message": str(failure),
                "content_hash": document.content_hash,
                "original_filename": document.original_filename,
            }
        )
        log_document_event(
            logger, logging.ERROR, str(failure),
            document_id=document_id, stage=failure.stage, outcome="error",
        )
        return failed


class PipelineWorker:
    """Drains the task queue on a thread pool."""

    def __init__(
        self,
        pipeline: DocumentPipeline,
        queue: TaskQueue,
        *,
        worker_count: int = 2,
        worker_id: str = "worker",
    ) -> None:
        self._pipeline = pipeline
        self._queue = queue
        self._worker_count = worker_count
        self._worker_id = worker_id
        self._executor = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix=worker_id)
        self._stop = threading.Event()

    def run_once(self) -> int:
        """Claim and process jobs until the queue is empty. Returns jobs handled."""
        handled = 0
        owner = f"{self._worker_id}-{threading.get_ident()}"
        while True:
            job = self._queue.claim_next(owner)
            if job is None:
                return handled
            try:
                self._pipeline.process(job.document_id)
            except Exception as exc:  # noqa: BLE001
                self._queue.mark_failed(job.job_id, str(exc))
                logger.exception("Job %s failed for document %s", job.job_id, job.document_id)
            else:
                self._queue.mark_done(job.job_id)
            handled += 1

    def wake(self) -> None:
        if not self._stop.is_set():
            self._executor.submit(self.run_once)

    def run_forever(self, poll_interval: float = 2.0) -> None:
        while not self._stop.is_set():
            futures = [self._executor.submit(self.run_once) for _ in range(self._worker_count)]
            for future in futures:
                future.result()
            self._stop.wait(poll_interval)

    def shutdown(self, wait: bool = True) -> None:
        self._stop.set()
        self._executor.shutdown(wait=wait)


@dataclass
class PipelineServices:
    settings: Settings
    store: SqliteRecordStore
    queue: TaskQueue
    metrics: MetricsCollector
    dead_letter: DeadLetterStore
    gateway: ExtractionGateway
    normalizer: EntityNormalizer
    approvals: ApprovalWorkflow
    validator: ValidationOrchestrator
    pipeline: DocumentPipeline
    worker: PipelineWorker


def build_services(
    settings: Settings,
    *,
    gateway: ExtractionGateway | None = None,
    text_extractor: Callable[[str | Path], OcrResult] = extract_text,
    start_worker: bool = True,
    seed_levels: bool = True,
) -> PipelineServices:
    store = SqliteRecordStore(settings.database_path, cache=TTLCache(settings.cache_ttl_seconds))
    queue = TaskQueue(settings.database_path, lease_seconds=settings.job_lease_seconds)
    metrics = MetricsCollector(sink=JsonlMetricsSink(settings.metrics_path))
    dead_letter = DeadLetterStore(settings.dead_letter_path)
    approvals = ApprovalWorkflow(store, metrics=metrics)
    if seed_levels:
        path = settings.approval_levels_path
        approvals.seed_levels(load_approval_levels(path) if path else None)
    validator = ValidationOrchestrator(
        store,
        approvals=approvals,
        price_high_threshold=settings.price_variance_high_threshold,
    )
    gateway = gateway or ExtractionGateway.from_settings(settings)
    normalizer = EntityNormalizer(store)
    pipeline = DocumentPipeline(
        store,
        queue,
        gateway,
        normalizer,
        validator,
        upload_dir=settings.upload_dir,
        dead_letter=dead_letter,
        metrics=metrics,
        max_upload_bytes=settings.max_upload_bytes,
        allowed_extensions=settings.allowed_extensions,
        text_extractor=text_extractor,
    )
    worker = PipelineWorker(pipeline, queue, worker_count=settings.worker_count)
    if start_worker:
        pipeline.on_enqueue = worker.wake
    return PipelineServices(
        settings=settings,
        store=store,
        queue=queue,
        metrics=metrics,
        dead_letter=dead_letter,
        gateway=gateway,
        normalizer=normalizer,
        approvals=approvals,
        validator=validator,
        pipeline=pipeline,
        worker=worker,
    )
