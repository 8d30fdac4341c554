"""Phase 1: partition the document set into named menu sections."""

import time
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.core.exceptions import AppError, StructureAnalysisError
from menu_extraction.core.gemini_client import Attachment, GeminiClient
from menu_extraction.core.rate_limiter import RateLimiter
from menu_extraction.models.menu_models import (
    CachedUpload,
    DocumentKind,
    DocumentLocation,
    MenuSection,
    MenuStructure,
    ModelTier,
    PreparedDocument,
)
from menu_extraction.models.response_models import StructureResponse
from menu_extraction.prompts.extraction_prompts import build_structure_prompt, build_structure_system_instruction
from menu_extraction.services.cost_tracker import TokenCostTracker
from menu_extraction.services.upload_cache import ContentUploadCache
from menu_extraction.services.vocabulary import VocabularyProvider
from menu_extraction.utils.json_parser import parse_json_safely
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)

OVERSIZED_SECTION_ITEMS = 100
FALLBACK_SECTION_NAME = "Menu Items"
FALLBACK_SECTION_CONFIDENCE = 0.8


def parse_structure_response(text: str) -> MenuStructure:
    """Decode the phase 1 response into a MenuStructure.

    Raises:
        StructureAnalysisError: If the response is unparseable or any section
            lacks a name or a list of document locations
    """
    data = parse_json_safely(text)
    if isinstance(data, list):
        data = {"sections": data}
    if not isinstance(data, dict) or not isinstance(data.get("sections"), list):
        raise StructureAnalysisError("Invalid structure response: missing or invalid sections array")

    try:
        response = StructureResponse.model_validate(data)
    except PydanticValidationError as e:
        raise StructureAnalysisError(f"Invalid section in structure response: {e}", original_error=e)

    sections = [
        MenuSection(
            name=section.name,
            document_locations=[
                DocumentLocation(
                    document_id=location.document_id,
                    page_numbers=location.page_numbers,
                    sheet_names=location.sheet_names,
                )
                for location in section.document_locations
            ],
            estimated_item_count=max(0, section.estimated_items),
            is_oversized=section.is_super_big or section.estimated_items > OVERSIZED_SECTION_ITEMS,
            confidence=section.confidence,
            description=section.description,
        )
        for section in response.sections
    ]
    return MenuStructure(
        sections=sections,
        overall_confidence=response.overall_confidence,
        total_estimated_items=sum(s.estimated_item_count for s in sections),
    )


def ensure_spreadsheet_coverage(structure: MenuStructure, documents: List[PreparedDocument]) -> MenuStructure:
    """Add a fallback section for spreadsheets no section references.

    The fallback covers exactly the uncovered spreadsheets. Its item estimate
    is the sum over their sheets of ``max(1, row_count - 1)``.
    """
    spreadsheets = [doc for doc in documents if doc.kind == DocumentKind.SPREADSHEET]
    covered = structure.referenced_document_ids()
    uncovered = [doc for doc in spreadsheets if doc.id not in covered]

    if not uncovered:
        return structure

    estimated = sum(max(1, sheet.row_count - 1) for doc in uncovered for sheet in doc.sheets or [])
    fallback = MenuSection(
        name=FALLBACK_SECTION_NAME,
        document_locations=[
            DocumentLocation(document_id=doc.id, sheet_names=[sheet.name for sheet in doc.sheets or []])
            for doc in uncovered
        ],
        estimated_item_count=estimated,
        is_oversized=estimated > OVERSIZED_SECTION_ITEMS,
        confidence=FALLBACK_SECTION_CONFIDENCE,
        description="Menu items from spreadsheet data",
    )
    LOGGER.warning(
        f"Created fallback section '{FALLBACK_SECTION_NAME}' for {len(uncovered)} uncovered spreadsheets: "
        f"{', '.join(doc.name for doc in uncovered)}",
        extra={"phase": 1},
    )
    return MenuStructure(
        sections=structure.sections + [fallback],
        overall_confidence=structure.overall_confidence,
        total_estimated_items=structure.total_estimated_items + estimated,
    )


class StructureAnalyzer:
    """Runs the single structure-analysis call on the pro tier."""

    def __init__(
        self,
        client: GeminiClient,
        tracker: TokenCostTracker,
        upload_cache: ContentUploadCache,
        rate_limiters: Dict[ModelTier, RateLimiter],
        vocabulary: VocabularyProvider,
        settings: ExtractionSettings,
    ):
        self.client = client
        self.tracker = tracker
        self.upload_cache = upload_cache
        self.rate_limiters = rate_limiters
        self.vocabulary = vocabulary
        self.settings = settings

    async def analyze(self, documents: List[PreparedDocument]) -> MenuStructure:
        """Analyze prepared documents and return a coverage-complete structure.

        Raises:
            StructureAnalysisError: If the call fails, the response is invalid,
                or no section remains after healing
        """
        LOGGER.info(f"Analyzing menu structure of {len(documents)} documents", extra={"phase": 1})

        uploads = await self.upload_cache.upload_all(documents)
        attachments, inline_content = build_document_attachments(documents, uploads)
        prompt = build_structure_prompt(documents, inline_content)

        start_time = time.time()
        try:
            result = await self.rate_limiters[ModelTier.PRO].run(
                self.client.generate,
                prompt,
                attachments=attachments,
                tier=ModelTier.PRO,
                system_instruction=build_structure_system_instruction(self.vocabulary),
                temperature=0.1,
                max_output_tokens=8000,
            )
        except AppError as e:
            raise StructureAnalysisError(f"Structure analysis call failed: {e}", original_error=e)

        usage = self.tracker.record_call(1, ModelTier.PRO, result.input_tokens, result.output_tokens)
        LOGGER.info(
            f"Structure response received in {time.time() - start_time:.2f}s "
            f"({usage.input} in / {usage.output} out, ${usage.cost:.4f})",
            extra={"phase": 1},
        )

        structure = parse_structure_response(result.text)
        self._warn_unknown_documents(structure, documents)
        structure = ensure_spreadsheet_coverage(structure, documents)

        if not structure.sections:
            raise StructureAnalysisError("No menu sections found")

        LOGGER.info(
            f"Found {len(structure.sections)} sections, ~{structure.total_estimated_items} items "
            f"(confidence {structure.overall_confidence:.2f})",
            extra={"phase": 1},
        )
        self.tracker.log_phase_cost(1, "Structure Analysis")
        return structure

    def _warn_unknown_documents(self, structure: MenuStructure, documents: List[PreparedDocument]) -> None:
        known = {doc.id for doc in documents}
        for section in structure.sections:
            for location in section.document_locations:
                if location.document_id not in known:
                    LOGGER.warning(
                        f"Section '{section.name}' references unknown document {location.document_id}",
                        extra={"phase": 1},
                    )


def build_document_attachments(
    documents: List[PreparedDocument],
    uploads: Dict[str, CachedUpload],
) -> Tuple[List[Attachment], Dict[str, str]]:
    """File references for uploaded documents plus inline fallbacks.

    Documents without an upload are attached inline: images and image-only
    PDFs as bytes, text PDFs and spreadsheets as prompt text.

    Returns:
        Tuple of (attachments, inline text keyed by document id)
    """
    attachments: List[Attachment] = []
    inline: Dict[str, str] = {}

    for doc in documents:
        upload: Optional[CachedUpload] = uploads.get(doc.id)
        if upload is not None:
            attachments.append(Attachment(mime_type=upload.mime_type, uri=upload.remote_uri))
            continue

        LOGGER.warning(f"No uploaded file for {doc.id}, attaching content inline")
        if doc.kind == DocumentKind.SPREADSHEET:
            inline[doc.id] = "\n\n".join(f"Sheet \"{s.name}\":\n{s.content}" for s in doc.sheets or [])
        elif doc.kind == DocumentKind.PDF and doc.pages and not doc.pages[0].is_image:
            inline[doc.id] = "\n\n".join(p.content for p in doc.pages if not p.is_image)
        elif doc.raw_bytes:
            attachments.append(Attachment(mime_type=doc.mime_type, data=doc.raw_bytes))

    return attachments, inline
