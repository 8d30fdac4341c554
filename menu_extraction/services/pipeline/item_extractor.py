"""Phase 2: extract raw menu items section by section.

Every section is turned into extraction batches (text pages, image pages,
whole images and sheet row chunks). The batches of a section are launched
together and admitted through the per-tier rate limiter. A failed batch
never aborts the section and contributes no items, unless it is a
spreadsheet batch, whose rows are then converted by column detection.
"""

import asyncio
import base64
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.core.gemini_client import Attachment, GeminiClient
from menu_extraction.core.rate_limiter import RateLimiter
from menu_extraction.models.menu_models import (
    DocumentKind,
    DocumentLocation,
    ExtractionBatch,
    MenuSection,
    MenuStructure,
    ModelTier,
    PreparedDocument,
    PreparedPage,
    PreparedSheet,
    RawItem,
    SourceInfo,
)
from menu_extraction.models.response_models import decode_batch_items
from menu_extraction.prompts.extraction_prompts import build_extraction_prompt
from menu_extraction.services.cost_tracker import TokenCostTracker
from menu_extraction.services.pipeline.batch_processor import BatchProcessor
from menu_extraction.services.spreadsheet_parser import convert_to_items, deduplicate_items, parse_csv_table
from menu_extraction.services.vocabulary import DEFAULT_CATEGORY, VocabularyProvider
from menu_extraction.utils.json_parser import parse_json_array
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)

MEDIUM_SECTION_ITEMS = 50

SheetKey = Tuple[str, str]
PageKey = Tuple[str, int]


@dataclass
class ExtractionStats:
    """Counters reported by phase 2."""

    batches: int = 0
    failed_batches: int = 0
    calls: int = 0
    rejected_items: int = 0
    invalid_categories: int = 0
    skipped_sheet_refs: int = 0
    fallback_items: int = 0
    empty_sections: List[str] = field(default_factory=list)


def batch_token_budget(section: MenuSection, settings: ExtractionSettings) -> int:
    """Token budget for one batch of ``section``.

    Example:
        >>> batch_token_budget(MenuSection(name="Wine", document_locations=[], estimated_item_count=80), settings)
        4000
    """
    if section.is_oversized:
        return settings.oversized_batch_tokens
    if section.estimated_item_count > MEDIUM_SECTION_ITEMS:
        return settings.medium_batch_tokens
    return settings.small_batch_tokens


def select_model_tier(is_image: bool, token_estimate: int, settings: ExtractionSettings) -> ModelTier:
    if is_image or token_estimate > settings.cheap_tier_token_threshold:
        return ModelTier.FLASH_LITE
    return ModelTier.FLASH


class ItemExtractor:
    """Builds and runs the extraction batches of every section.

    One extractor serves one run. The processed-sheet set lives on the
    instance, so a (document, sheet) pair is submitted at most once per run
    even when several sections reference it.
    """

    def __init__(
        self,
        client: GeminiClient,
        tracker: TokenCostTracker,
        rate_limiters: Dict[ModelTier, RateLimiter],
        vocabulary: VocabularyProvider,
        settings: ExtractionSettings,
    ):
        self.client = client
        self.tracker = tracker
        self.rate_limiters = rate_limiters
        self.vocabulary = vocabulary
        self.settings = settings
        self.stats = ExtractionStats()
        self._processed_sheets: Set[SheetKey] = set()

    async def extract(
        self,
        structure: MenuStructure,
        documents: List[PreparedDocument],
    ) -> Tuple[List[RawItem], ExtractionStats]:
        """Extract raw items for every section of ``structure``.

        Sections are processed in order; the batches inside a section run
        concurrently.

        Returns:
            Tuple of (de-duplicated raw items, extraction stats)
        """
        start_time = time.time()
        documents_by_id = {doc.id: doc for doc in documents}
        all_sections = [section.name for section in structure.sections]
        sheet_owners = index_sheet_references(structure, documents_by_id)

        items: List[RawItem] = []
        for index, section in enumerate(structure.sections, start=1):
            batches = self.build_batches(section, documents_by_id, sheet_owners)
            if not batches:
                LOGGER.warning(
                    f"Section '{section.name}' has no extractable content",
                    extra={"phase": 2, "section": section.name},
                )
                self.stats.empty_sections.append(section.name)
                continue

            LOGGER.info(
                f"Section {index}/{len(structure.sections)} '{section.name}': {len(batches)} batches",
                extra={"phase": 2, "section": section.name},
            )
            results = await asyncio.gather(*(self.process_batch(batch, all_sections) for batch in batches))
            section_items = [item for batch_items in results for item in batch_items]
            if not section_items:
                self.stats.empty_sections.append(section.name)
            items.extend(section_items)

        unique_items = deduplicate_items(items)
        LOGGER.info(
            f"Extracted {len(unique_items)} items from {self.stats.batches} batches "
            f"({self.stats.failed_batches} failed) in {time.time() - start_time:.2f}s",
            extra={"phase": 2},
        )
        self.tracker.log_phase_cost(2, "Item Extraction")
        return unique_items, self.stats

    def build_batches(
        self,
        section: MenuSection,
        documents_by_id: Dict[str, PreparedDocument],
        sheet_owners: Optional[Dict[SheetKey, List[str]]] = None,
    ) -> List[ExtractionBatch]:
        """Turn a section's document locations into extraction batches.

        Text pages come first; image pages follow only for pages not already
        covered. Sheets already submitted earlier in the run are skipped.
        """
        sheet_owners = sheet_owners or {}
        budget = batch_token_budget(section, self.settings)
        processed_pages: Set[PageKey] = set()
        text_batches: List[ExtractionBatch] = []
        image_batches: List[ExtractionBatch] = []

        for location in section.document_locations:
            doc = documents_by_id.get(location.document_id)
            if doc is None:
                LOGGER.warning(
                    f"Section '{section.name}' references unknown document {location.document_id}",
                    extra={"phase": 2, "section": section.name},
                )
                continue

            if doc.kind == DocumentKind.SPREADSHEET:
                text_batches.extend(self._sheet_batches(section, doc, location, budget, sheet_owners))
            elif doc.kind == DocumentKind.PDF:
                pages = self._select_pages(section, doc, location)
                for page in [p for p in pages if not p.is_image] + [p for p in pages if p.is_image]:
                    key = (doc.id, page.page_number)
                    if key in processed_pages:
                        continue
                    processed_pages.add(key)
                    target = image_batches if page.is_image else text_batches
                    target.append(self._page_batch(section, doc, page))
            else:
                key = (doc.id, 1)
                if key in processed_pages:
                    continue
                processed_pages.add(key)
                image_batches.append(self._image_batch(section, doc))

        return text_batches + image_batches

    async def process_batch(self, batch: ExtractionBatch, all_sections: List[str]) -> List[RawItem]:
        """Run one batch.

        A failed call yields an empty list and a warning; for spreadsheet
        batches the rows are converted directly instead.
        """
        self.stats.batches += 1
        prompt = build_extraction_prompt(batch, all_sections, self.vocabulary)
        attachments = None
        if batch.is_image:
            attachments = [Attachment(mime_type=batch.mime_type or "image/png", data=base64.b64decode(batch.payload))]

        try:
            result = await self.rate_limiters[batch.model_tier].run(
                self.client.generate,
                prompt,
                attachments=attachments,
                tier=batch.model_tier,
                temperature=0.1,
                max_output_tokens=8000,
                timeout=self.settings.call_timeout_seconds,
            )
        except Exception as e:
            self.stats.failed_batches += 1
            LOGGER.warning(
                f"Batch {batch.id} of section '{batch.section.name}' failed: {e}",
                extra={"phase": 2, "section": batch.section.name, "batch_id": batch.id},
            )
            return self.convert_sheet_rows(batch)

        self.stats.calls += 1
        self.tracker.record_call(
            2,
            batch.model_tier,
            result.input_tokens,
            result.output_tokens,
            image_count=1 if batch.is_image else 0,
        )
        items = self.parse_batch_response(result.text, batch)
        LOGGER.debug(
            f"Batch {batch.id} ({batch.model_tier.value}) returned {len(items)} items",
            extra={"phase": 2, "batch_id": batch.id},
        )
        return items

    def parse_batch_response(self, text: str, batch: ExtractionBatch) -> List[RawItem]:
        """Decode a batch response into RawItems.

        Invalid elements are dropped and counted. Categories outside the
        vocabulary are kept as returned and reported.
        """
        decoded = decode_batch_items(parse_json_array(text))
        if decoded.rejected:
            self.stats.rejected_items += decoded.rejected
            LOGGER.warning(
                f"Batch {batch.id}: dropped {decoded.rejected} invalid items",
                extra={"phase": 2, "batch_id": batch.id},
            )

        source_info = source_info_for(batch)
        targets = batch.target_sections or [batch.section.name]
        items = []
        for response in decoded.items:
            category = response.category or DEFAULT_CATEGORY
            if not self.vocabulary.is_allowed_category(category):
                self.stats.invalid_categories += 1
                LOGGER.warning(
                    f"Item '{response.name}' has category '{category}' outside the allowed list",
                    extra={"phase": 2, "batch_id": batch.id},
                )
            section = response.section if response.section in targets else batch.section.name
            items.append(
                RawItem(
                    name=response.name,
                    description=response.description,
                    price=response.price,
                    category=category,
                    section=section,
                    source_info=source_info,
                )
            )
        return items

    def convert_sheet_rows(self, batch: ExtractionBatch) -> List[RawItem]:
        """Convert a spreadsheet batch's CSV rows without a model call.

        Returns an empty list for page and image batches.
        """
        ref = batch.source_refs[0]
        if not ref.sheet_names or batch.is_image:
            return []

        table = parse_csv_table(batch.payload, ref.sheet_names[0])
        if table is None:
            return []

        targets = batch.target_sections or [batch.section.name]
        items = [
            RawItem(
                name=item.name,
                description=item.description,
                price=item.price,
                category=item.category,
                section=item.section if item.section in targets else batch.section.name,
                source_info=item.source_info,
            )
            for item in convert_to_items(table, ref.document_id, self.vocabulary)
        ]
        self.stats.fallback_items += len(items)
        LOGGER.info(
            f"Batch {batch.id}: converted {len(items)} rows of sheet '{table.name}' by column detection",
            extra={"phase": 2, "batch_id": batch.id},
        )
        return items

    def _select_pages(
        self,
        section: MenuSection,
        doc: PreparedDocument,
        location: DocumentLocation,
    ) -> List[PreparedPage]:
        pages = doc.pages or []
        if not location.page_numbers:
            return pages
        wanted = set(location.page_numbers)
        selected = [page for page in pages if page.page_number in wanted]
        if not selected:
            # Coarse preparation keeps the whole PDF as page 1
            LOGGER.info(
                f"Pages {sorted(wanted)} of {doc.name} not prepared individually, "
                f"using all {len(pages)} prepared pages for '{section.name}'",
                extra={"phase": 2, "section": section.name},
            )
            return pages
        return selected

    def _sheet_batches(
        self,
        section: MenuSection,
        doc: PreparedDocument,
        location: DocumentLocation,
        budget: int,
        sheet_owners: Dict[SheetKey, List[str]],
    ) -> List[ExtractionBatch]:
        batches = []
        for sheet in self._select_sheets(section, doc, location):
            key = (doc.id, sheet.name)
            if key in self._processed_sheets:
                self.stats.skipped_sheet_refs += 1
                LOGGER.warning(
                    f"Sheet '{sheet.name}' of {doc.name} already extracted, skipping for '{section.name}'",
                    extra={"phase": 2, "section": section.name},
                )
                continue
            self._processed_sheets.add(key)

            targets = sheet_owners.get(key) or [section.name]
            if section.name not in targets:
                targets = [section.name] + targets
            ref = DocumentLocation(document_id=doc.id, sheet_names=[sheet.name])

            if sheet.token_estimate <= budget:
                batches.append(
                    self._text_batch(section, sheet.content, sheet.token_estimate, ref, targets, doc.id, sheet.name)
                )
                continue

            chunks = BatchProcessor.split_sheet_rows(sheet, budget)
            LOGGER.info(
                f"Sheet '{sheet.name}' (~{sheet.token_estimate} tokens) split into {len(chunks)} chunks",
                extra={"phase": 2, "section": section.name},
            )
            for chunk in chunks:
                batch = self._text_batch(
                    section, chunk.content, chunk.token_estimate, ref, targets,
                    doc.id, sheet.name, chunk.start_row, chunk.end_row,
                    row_range=(chunk.start_row, chunk.end_row),
                )
                batches.append(batch)
        return batches

    def _select_sheets(
        self,
        section: MenuSection,
        doc: PreparedDocument,
        location: DocumentLocation,
    ) -> List[PreparedSheet]:
        if not location.sheet_names:
            return list(doc.sheets or [])
        sheets = []
        for name in location.sheet_names:
            sheet = doc.get_sheet(name)
            if sheet is None:
                LOGGER.warning(
                    f"Section '{section.name}' references missing sheet '{name}' of {doc.name}",
                    extra={"phase": 2, "section": section.name},
                )
                continue
            sheets.append(sheet)
        return sheets

    def _text_batch(
        self,
        section: MenuSection,
        content: str,
        token_estimate: int,
        ref: DocumentLocation,
        targets: List[str],
        *id_parts: object,
        row_range: Optional[Tuple[int, int]] = None,
    ) -> ExtractionBatch:
        return ExtractionBatch(
            id=BatchProcessor.generate_batch_id(section.name, *id_parts),
            section=section,
            payload=content,
            token_estimate=token_estimate,
            model_tier=select_model_tier(False, token_estimate, self.settings),
            source_refs=[ref],
            target_sections=targets,
            row_range=row_range,
        )

    def _page_batch(self, section: MenuSection, doc: PreparedDocument, page: PreparedPage) -> ExtractionBatch:
        return ExtractionBatch(
            id=BatchProcessor.generate_batch_id(section.name, doc.id, "page", page.page_number),
            section=section,
            payload=page.content,
            is_image=page.is_image,
            mime_type=page.mime_type if page.is_image else None,
            token_estimate=page.token_estimate,
            model_tier=select_model_tier(page.is_image, page.token_estimate, self.settings),
            source_refs=[DocumentLocation(document_id=doc.id, page_numbers=[page.page_number])],
            target_sections=[section.name],
        )

    def _image_batch(self, section: MenuSection, doc: PreparedDocument) -> ExtractionBatch:
        return ExtractionBatch(
            id=BatchProcessor.generate_batch_id(section.name, doc.id, "image"),
            section=section,
            payload=doc.content or "",
            is_image=True,
            mime_type=doc.mime_type,
            token_estimate=doc.total_tokens,
            model_tier=ModelTier.FLASH_LITE,
            source_refs=[DocumentLocation(document_id=doc.id)],
            target_sections=[section.name],
        )


def index_sheet_references(
    structure: MenuStructure,
    documents_by_id: Dict[str, PreparedDocument],
) -> Dict[SheetKey, List[str]]:
    """Map each (document, sheet) to the sections referencing it, in section order."""
    owners: Dict[SheetKey, List[str]] = {}
    for section in structure.sections:
        for location in section.document_locations:
            doc = documents_by_id.get(location.document_id)
            if doc is None or doc.kind != DocumentKind.SPREADSHEET:
                continue
            names = location.sheet_names or [sheet.name for sheet in doc.sheets or []]
            for name in names:
                sections = owners.setdefault((doc.id, name), [])
                if section.name not in sections:
                    sections.append(section.name)
    return owners


def source_info_for(batch: ExtractionBatch) -> SourceInfo:
    """Provenance taken from the batch's first source reference."""
    ref = batch.source_refs[0]
    return SourceInfo(
        document_id=ref.document_id,
        page=ref.page_numbers[0] if ref.page_numbers else None,
        sheet=ref.sheet_names[0] if ref.sheet_names else None,
    )
