"""
Attachment preparation for chat turns: size checks and PDF text extraction.
"""
import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import List

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from errors import AttachmentRejected, ExtractionFailure
from models import FileAttachment

logger = logging.getLogger(__name__)


@dataclass
class ExtractedText:
    filename: str
    text: str


@dataclass
class ExtractionReport:
    texts: List[ExtractedText] = field(default_factory=list)
    failures: List[ExtractionFailure] = field(default_factory=list)


def check_attachment_sizes(attachments: List[FileAttachment], max_bytes: int) -> None:
    """Raise AttachmentRejected if any attachment is larger than max_bytes once decoded."""
    for attachment in attachments:
        if attachment.size_bytes > max_bytes:
            raise AttachmentRejected(f"{attachment.name} exceeds the {max_bytes // (1024 * 1024)} MiB attachment limit")
        try:
            size = len(attachment.raw_bytes())
        except ValueError as exc:
            raise AttachmentRejected(str(exc)) from exc
        if size > max_bytes:
            raise AttachmentRejected(f"{attachment.name} exceeds the {max_bytes // (1024 * 1024)} MiB attachment limit")


def extract_pdf_text(data: bytes, filename: str = "document.pdf") -> str:
    """Extract text from all pages of a PDF. Raises ExtractionFailure."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = []
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(page_text)
    except (PdfReadError, ValueError, KeyError, TypeError, OSError) as exc:
        raise ExtractionFailure(filename, str(exc) or exc.__class__.__name__) from exc
    return "\n\n".join(pages).strip()


async def _extract_one(attachment: FileAttachment) -> ExtractedText:
    try:
        data = attachment.raw_bytes()
    except ValueError as exc:
        raise ExtractionFailure(attachment.name, str(exc)) from exc
    text = await asyncio.to_thread(extract_pdf_text, data, attachment.name)
    return ExtractedText(filename=attachment.name, text=text)


async def extract_pdf_texts(attachments: List[FileAttachment]) -> ExtractionReport:
    """
    Extract text from every PDF attachment concurrently.
    A failure for one file is logged and skipped; it never fails the batch.
    """
    pdfs = [a for a in attachments if a.is_pdf]
    report = ExtractionReport()
    if not pdfs:
        return report

    results = await asyncio.gather(*(_extract_one(pdf) for pdf in pdfs), return_exceptions=True)
    for pdf, result in zip(pdfs, results):
        if isinstance(result, ExtractionFailure):
            logger.warning(f"PDF extraction failed for {pdf.name}: {result.reason}")
            report.failures.append(result)
        elif isinstance(result, Exception):
            logger.warning(f"PDF extraction failed for {pdf.name}: {result!r}")
            report.failures.append(ExtractionFailure(pdf.name, repr(result)))
        else:
            report.texts.append(result)
    return report


def wrap_extracted_text(extracted: ExtractedText) -> str:
    return (
        f"--- BEGIN FILE: {extracted.filename} ---\n"
        f"{extracted.text}\n"
        f"--- END FILE: {extracted.filename} ---"
    )


def append_extracted_text(content: str, texts: List[ExtractedText]) -> str:
    """Append labeled file blocks to a message body. Files with no text are skipped."""
    blocks = [wrap_extracted_text(t) for t in texts if t.text]
    if not blocks:
        return content
    return "\n\n".join([content] + blocks) if content else "\n\n".join(blocks)


def reduce_for_provider(attachments: List[FileAttachment], native_documents: bool) -> List[FileAttachment]:
    """Keep images, plus PDFs when the provider accepts them as documents."""
    return [a for a in attachments if a.is_image or (native_documents and a.is_pdf)]
