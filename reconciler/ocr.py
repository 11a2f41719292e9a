from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError
from pdfminer.high_level import extract_pages
from pdfminer.layout import LTTextContainer
from pdfminer.pdfparser import PDFSyntaxError

logger = logging.getLogger(__name__)


class OcrError(RuntimeError):
    def __init__(self, message: str, code: str = "ocr_failed") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class OcrResult:
    text: str
    total_pages: int


def _pdf_text(path: Path) -> OcrResult:
    pages: list[str] = []
    try:
        for layout in extract_pages(str(path)):
            chunks = [el.get_text() for el in layout if isinstance(el, LTTextContainer)]
            pages.append("".join(chunks))
    except PDFSyntaxError as exc:
        raise OcrError(f"Unreadable PDF: {exc}", code="invalid_pdf") from exc
    return OcrResult(text="\n\f".join(pages), total_pages=len(pages))


def _docx_text(path: Path) -> OcrResult:
    try:
        doc = DocxDocument(str(path))
    except PackageNotFoundError as exc:
        raise OcrError(f"Unreadable DOCX: {exc}", code="invalid_docx") from exc
    parts = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return OcrResult(text="\n".join(parts), total_pages=1)


def extract_text(path: str | Path) -> OcrResult:
    """Pull plain text out of an uploaded PDF or DOCX file."""
    source = Path(path)
    if not source.exists():
        raise OcrError(f"File not found: {source}", code="file_not_found")
    suffix = source.suffix.lower()
    if suffix == ".pdf":
        result = _pdf_text(source)
    elif suffix == ".docx":
        result = _docx_text(source)
    elif suffix == ".doc":
        raise OcrError(
            "Legacy .doc format is not supported; convert the document to .docx",
            code="unsupported_type",
        )
    else:
        raise OcrError(f"Unsupported file extension: {suffix}", code="unsupported_type")

    if not result.text.strip():
        raise OcrError("No text could be extracted from the document", code="empty_text")
    logger.info("Extracted %d characters from %d page(s)", len(result.text), result.total_pages)
    return result
