"""Phase 0: normalize raw documents into a phase-agnostic form.

PDFs become text pages (or an image page when the extractable text is too
thin), spreadsheets become per-sheet CSV text and images pass through as
base64. A document that fails preparation is dropped with a warning and
never aborts the rest of the batch.
"""

import base64
import binascii
import time
from io import BytesIO
from pathlib import Path
from typing import List, Optional

import httpx
import pdfplumber

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.core.exceptions import DocumentPreparationError, UnsupportedDocumentError
from menu_extraction.models.menu_models import (
    DocumentKind,
    DocumentMeta,
    PreparationSummary,
    PreparedDocument,
    PreparedPage,
    PreparedSheet,
)
from menu_extraction.services.spreadsheet_parser import is_spreadsheet_mime, read_workbook, sheet_to_csv
from menu_extraction.utils.logging import get_logger
from menu_extraction.utils.token_estimator import estimate_image_tokens, estimate_text_tokens

LOGGER = get_logger(__name__)

PAGE_IMAGE_RESOLUTION = 150


def classify_mime_type(mime_type: Optional[str]) -> Optional[DocumentKind]:
    """Map a MIME type to a document kind, or None when unsupported."""
    if not mime_type:
        return None
    mime_type = mime_type.lower().strip()
    if mime_type == "application/pdf":
        return DocumentKind.PDF
    if mime_type.startswith("image/"):
        return DocumentKind.IMAGE
    if is_spreadsheet_mime(mime_type):
        return DocumentKind.SPREADSHEET
    return None


class DocumentPreparer:
    """Prepares input documents for structure analysis and extraction."""

    def __init__(self, settings: ExtractionSettings, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize the preparer.

        Args:
            settings: Pipeline settings (PDF text threshold, fetch timeout)
            http_client: Optional shared HTTP client for URL documents
        """
        self.settings = settings
        self.http_client = http_client

    async def prepare(self, documents: List[DocumentMeta]) -> PreparationSummary:
        """Prepare every document, dropping the ones that fail.

        Args:
            documents: Validated input descriptors

        Returns:
            PreparationSummary with the prepared documents and aggregate counts
        """
        start_time = time.time()
        summary = PreparationSummary()

        for index, doc in enumerate(documents, start=1):
            LOGGER.info(
                f"Preparing document {index}/{len(documents)}: {doc.name} ({doc.mime_type})",
                extra={"phase": 0, "document_id": doc.id},
            )
            try:
                prepared = await self.prepare_document(doc)
            except Exception as e:
                message = f"Dropping document {doc.name} ({doc.id}): {e}"
                LOGGER.warning(message, extra={"phase": 0, "document_id": doc.id})
                summary.dropped.append(doc.id)
                summary.warnings.append(message)
                continue

            summary.documents.append(prepared)
            summary.total_tokens += prepared.total_tokens
            summary.total_pages += len(prepared.pages or [])
            summary.total_sheets += len(prepared.sheets or [])

        LOGGER.info(
            f"Prepared {len(summary.documents)}/{len(documents)} documents: "
            f"{summary.total_pages} pages, {summary.total_sheets} sheets, "
            f"~{summary.total_tokens} tokens in {time.time() - start_time:.2f}s",
            extra={"phase": 0},
        )
        return summary

    async def prepare_document(self, doc: DocumentMeta) -> PreparedDocument:
        """Prepare a single document.

        Raises:
            UnsupportedDocumentError: If the MIME type is not supported
            DocumentPreparationError: If the document cannot be read or has no content
        """
        kind = classify_mime_type(doc.mime_type)
        if kind is None:
            raise UnsupportedDocumentError(f"Unsupported document type: {doc.mime_type}")

        data = await self._load_bytes(doc)
        if not data:
            raise DocumentPreparationError(f"Document {doc.id} is empty")

        if kind == DocumentKind.PDF:
            prepared = self._prepare_pdf(doc, data)
        elif kind == DocumentKind.SPREADSHEET:
            prepared = self._prepare_spreadsheet(doc, data)
        else:
            prepared = self._prepare_image(doc, data)

        if not prepared.has_payload():
            raise DocumentPreparationError(f"Document {doc.id} produced no usable content")
        return prepared

    def _prepare_pdf(self, doc: DocumentMeta, data: bytes) -> PreparedDocument:
        try:
            with pdfplumber.open(BytesIO(data)) as pdf:
                page_texts = [(page.extract_text() or "").strip() for page in pdf.pages]
                if self.settings.pdf_per_page_text:
                    pages = self._per_page(pdf, page_texts)
                else:
                    pages = None
        except Exception as e:
            raise DocumentPreparationError(f"Failed to read PDF {doc.name}: {e}", original_error=e)

        full_text = "\n".join(text for text in page_texts if text)
        if pages is None or len(full_text) < self.settings.min_pdf_text_chars:
            pages = [self._coarse_page(doc, full_text, data)]

        return PreparedDocument(
            id=doc.id,
            name=doc.name,
            kind=DocumentKind.PDF,
            mime_type="application/pdf",
            pages=pages,
            raw_bytes=data,
            metadata={
                "file_size": len(data),
                "source_page_count": len(page_texts),
                "has_text": any(not page.is_image for page in pages),
            },
        )

    def _coarse_page(self, doc: DocumentMeta, full_text: str, data: bytes) -> PreparedPage:
        if len(full_text) < self.settings.min_pdf_text_chars:
            LOGGER.info(
                f"PDF {doc.name} has {len(full_text)} extractable characters, treating it as an image",
                extra={"phase": 0, "document_id": doc.id},
            )
            return PreparedPage(
                page_number=1,
                content=base64.b64encode(data).decode("ascii"),
                is_image=True,
                mime_type="application/pdf",
                token_estimate=estimate_image_tokens(),
            )
        return PreparedPage(
            page_number=1,
            content=full_text,
            is_image=False,
            token_estimate=estimate_text_tokens(full_text),
        )

    def _per_page(self, pdf, page_texts: List[str]) -> List[PreparedPage]:
        pages = []
        for page_number, (page, text) in enumerate(zip(pdf.pages, page_texts), start=1):
            if text:
                pages.append(
                    PreparedPage(
                        page_number=page_number,
                        content=text,
                        is_image=False,
                        token_estimate=estimate_text_tokens(text),
                    )
                )
                continue

            buffer = BytesIO()
            try:
                page.to_image(resolution=PAGE_IMAGE_RESOLUTION).original.save(buffer, format="PNG")
            except Exception as e:
                LOGGER.warning(f"Skipping page {page_number}: could not render it as an image: {e}", extra={"phase": 0})
                continue
            pages.append(
                PreparedPage(
                    page_number=page_number,
                    content=base64.b64encode(buffer.getvalue()).decode("ascii"),
                    is_image=True,
                    mime_type="image/png",
                    token_estimate=estimate_image_tokens(),
                )
            )
        return pages

    def _prepare_spreadsheet(self, doc: DocumentMeta, data: bytes) -> PreparedDocument:
        tables = read_workbook(data, doc.mime_type, doc.name)
        sheets = []
        for table in tables:
            content = sheet_to_csv(table)
            sheets.append(
                PreparedSheet(
                    name=table.name,
                    content=content,
                    row_count=table.row_count,
                    token_estimate=estimate_text_tokens(content),
                )
            )

        if not sheets:
            raise DocumentPreparationError(f"Spreadsheet {doc.name} has no non-empty sheets")

        return PreparedDocument(
            id=doc.id,
            name=doc.name,
            kind=DocumentKind.SPREADSHEET,
            mime_type=doc.mime_type,
            sheets=sheets,
            raw_bytes=data,
            metadata={"file_size": len(data)},
        )

    def _prepare_image(self, doc: DocumentMeta, data: bytes) -> PreparedDocument:
        return PreparedDocument(
            id=doc.id,
            name=doc.name,
            kind=DocumentKind.IMAGE,
            mime_type=doc.mime_type,
            content=base64.b64encode(data).decode("ascii"),
            raw_bytes=data,
            metadata={"file_size": len(data), "total_tokens": estimate_image_tokens()},
        )

    async def _load_bytes(self, doc: DocumentMeta) -> bytes:
        if doc.content:
            return decode_base64_content(doc.content)

        url = doc.url or ""
        if url.startswith(("http://", "https://")):
            try:
                if self.http_client is not None:
                    response = await self.http_client.get(url)
                    response.raise_for_status()
                    return response.content
                async with httpx.AsyncClient(timeout=self.settings.fetch_timeout_seconds) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    return response.content
            except httpx.HTTPError as e:
                raise DocumentPreparationError(f"Failed to fetch {url}: {e}", original_error=e)

        path = Path(url)
        if not path.exists():
            raise DocumentPreparationError(f"Document file not found: {url}")
        return path.read_bytes()


def decode_base64_content(content: str) -> bytes:
    """Decode base64 content, accepting ``data:<mime>;base64,`` prefixes.

    Raises:
        DocumentPreparationError: If the content is not valid base64
    """
    if content.startswith("data:") and "," in content:
        content = content.split(",", 1)[1]
    try:
        return base64.b64decode(content, validate=False)
    except (binascii.Error, ValueError) as e:
        raise DocumentPreparationError(f"Invalid base64 content: {e}", original_error=e)


def summarize_documents(documents: List[PreparedDocument], max_tokens: int = 2000) -> str:
    """Compact text overview of prepared documents for planning and prompts.

    Shows up to three pages or two sheets per document with short previews
    and stops once the token budget is reached.
    """
    summary = f"DOCUMENTS ({len(documents)}):\n"
    current_tokens = estimate_text_tokens(summary)

    for position, doc in enumerate(documents):
        doc_summary = f"\n{doc.name} [{doc.kind.value}, id={doc.id}]\n"
        if doc.pages:
            for page in doc.pages[:3]:
                if page.is_image:
                    doc_summary += f"  Page {page.page_number}: (image)\n"
                else:
                    preview = page.content[:200] + ("..." if len(page.content) > 200 else "")
                    doc_summary += f"  Page {page.page_number}: {preview}\n"
            if len(doc.pages) > 3:
                doc_summary += f"  ... and {len(doc.pages) - 3} more pages\n"
        elif doc.sheets:
            for sheet in doc.sheets[:2]:
                preview = "\n    ".join(sheet.content.split("\n")[:5])
                doc_summary += f"  Sheet \"{sheet.name}\" ({sheet.row_count} rows):\n    {preview}\n"
            if len(doc.sheets) > 2:
                doc_summary += f"  ... and {len(doc.sheets) - 2} more sheets\n"
        else:
            doc_summary += "  (image)\n"

        doc_tokens = estimate_text_tokens(doc_summary)
        if current_tokens + doc_tokens > max_tokens:
            summary += f"... and {len(documents) - position} more documents\n"
            break
        summary += doc_summary
        current_tokens += doc_tokens

    return summary
