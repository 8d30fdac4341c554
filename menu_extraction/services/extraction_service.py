"""Menu extraction orchestrator.

Sequences phase 0 (preparation), phase 1 (structure), phase 2 (items) and
phase 3 (enrichment) for one run. Every run gets its own cost tracker,
upload cache, rate limiters and log collector.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from menu_extraction.config.settings import ExtractionSettings, get_settings
from menu_extraction.core.exceptions import (
    AppError,
    DocumentPreparationError,
    InputValidationError,
)
from menu_extraction.core.gemini_client import GeminiClient
from menu_extraction.core.rate_limiter import RateLimiter, create_rate_limiters
from menu_extraction.models.menu_models import (
    DocumentKind,
    DocumentMeta,
    ExtractionResult,
    ModelTier,
    PreparedDocument,
    ValidationReport,
)
from menu_extraction.services.base_service import BaseService
from menu_extraction.services.cost_tracker import IMAGE_COST, TokenCostTracker, calculate_cost
from menu_extraction.services.pipeline.document_preparer import DocumentPreparer, classify_mime_type
from menu_extraction.services.pipeline.enricher import Enricher
from menu_extraction.services.pipeline.item_extractor import ItemExtractor
from menu_extraction.services.pipeline.structure_analyzer import StructureAnalyzer
from menu_extraction.services.pipeline.validators import (
    validate_document_coverage,
    validate_enrichment,
    validate_extraction,
    validate_structure,
)
from menu_extraction.services.upload_cache import ContentUploadCache
from menu_extraction.services.vocabulary import VocabularyProvider
from menu_extraction.utils.logging import ExtractionLogCollector, current_run_id, get_logger

LOGGER = get_logger(__name__)

# Rough output/input ratios used by the pre-run estimate
STRUCTURE_OUTPUT_TOKENS = 1000
EXTRACTION_OUTPUT_RATIO = 0.5
ENRICHMENT_INPUT_RATIO = 0.5
ENRICHMENT_OUTPUT_RATIO = 0.3


def validate_documents(documents: List[DocumentMeta]) -> List[str]:
    """Return every problem found in the input descriptors.

    Example:
        >>> validate_documents([DocumentMeta(id="1", name="menu.pdf", mime_type="application/pdf")])
        ['Document 1: missing both content and url']
    """
    errors: List[str] = []
    if not documents:
        return ["No documents provided"]

    for position, doc in enumerate(documents):
        label = doc.id or f"#{position + 1}"
        if not doc.id:
            errors.append(f"Document {label}: missing id")
        if not doc.name:
            errors.append(f"Document {label}: missing name")
        if not doc.mime_type:
            errors.append(f"Document {label}: missing mime type")
        elif classify_mime_type(doc.mime_type) is None:
            errors.append(f"Document {label}: unsupported mime type {doc.mime_type}")
        if not doc.content and not doc.url:
            errors.append(f"Document {label}: missing both content and url")
    return errors


def estimate_extraction_cost(documents: List[PreparedDocument]) -> float:
    """Pre-run cost estimate in USD from prepared token counts.

    Phase 1 reads everything on the pro tier, phase 2 reads everything on
    the flash tier and phase 3 re-reads about half of it on the pro tier.
    """
    total_tokens = sum(doc.total_tokens for doc in documents)
    image_count = sum(
        1
        for doc in documents
        for page in (doc.pages or [])
        if page.is_image
    ) + sum(1 for doc in documents if doc.kind == DocumentKind.IMAGE)

    phase1 = calculate_cost(ModelTier.PRO, total_tokens, STRUCTURE_OUTPUT_TOKENS)
    phase2 = calculate_cost(ModelTier.FLASH, total_tokens, int(total_tokens * EXTRACTION_OUTPUT_RATIO))
    phase3 = calculate_cost(
        ModelTier.PRO,
        int(total_tokens * ENRICHMENT_INPUT_RATIO),
        int(total_tokens * ENRICHMENT_OUTPUT_RATIO),
    )
    return phase1 + phase2 + phase3 + image_count * IMAGE_COST


@dataclass
class ExtractionRunContext:
    """Dependencies owned by a single extraction run."""

    run_id: str
    tracker: TokenCostTracker
    collector: ExtractionLogCollector
    rate_limiters: Optional[Dict[ModelTier, RateLimiter]] = None
    upload_cache: Optional[ContentUploadCache] = None


class MenuExtractionService(BaseService):
    """Runs the staged menu extraction pipeline.

    Example:
        >>> service = MenuExtractionService()
        >>> result = await service.extract_menu(documents)
        >>> result.success, len(result.items), result.costs.total
    """

    def __init__(
        self,
        settings: Optional[ExtractionSettings] = None,
        client: Optional[GeminiClient] = None,
        vocabulary: Optional[VocabularyProvider] = None,
    ):
        """Initialize the service.

        Args:
            settings: Pipeline settings, defaults to environment settings
            client: Gemini client; built from settings on first use when omitted
            vocabulary: Allowed categories and sizes
        """
        super().__init__()
        self.settings = settings or get_settings()
        self.client = client
        self.vocabulary = vocabulary or VocabularyProvider()

    async def extract_menu(self, documents: List[DocumentMeta]) -> ExtractionResult:
        """Extract a menu from the given documents.

        Never raises. A failed run returns ``success=False`` with the error,
        the costs incurred so far and the collected logs.
        """
        start_time = time.time()
        run_id = uuid.uuid4().hex[:12]
        token = current_run_id.set(run_id)
        collector = ExtractionLogCollector(run_id, level=self.settings.log_level.upper()).attach()
        context = ExtractionRunContext(run_id=run_id, tracker=TokenCostTracker(), collector=collector)

        result: Optional[ExtractionResult] = None
        error: Optional[str] = None
        errors: List[str] = []
        try:
            LOGGER.info(f"Starting extraction run {run_id} with {len(documents)} documents", extra={"phase": 0})
            run = self.execute(documents, context=context)
            if self.settings.run_timeout_seconds > 0:
                result = await asyncio.wait_for(run, timeout=self.settings.run_timeout_seconds)
            else:
                result = await run

        except InputValidationError as e:
            error = str(e)
            errors = e.errors
            LOGGER.error(error, extra={"phase": 0})

        except asyncio.TimeoutError:
            error = f"Extraction timed out after {self.settings.run_timeout_seconds}s"
            LOGGER.error(error)

        except AppError as e:
            error = str(e)
            LOGGER.error(f"Extraction run {run_id} failed: {error}")

        finally:
            if context.upload_cache is not None:
                await context.upload_cache.close()
            costs = context.tracker.detailed_costs()
            processing_time_ms = int((time.time() - start_time) * 1000)
            if error is not None:
                LOGGER.info(
                    f"Partial cost before failure: ${costs.total:.6f} across {costs.total_calls} calls"
                )
            collector.detach()
            current_run_id.reset(token)

        if result is None:
            return ExtractionResult(
                success=False,
                costs=costs,
                processing_time_ms=processing_time_ms,
                error=error,
                errors=errors,
                logs=collector.export_text(),
            )

        return result.model_copy(
            update={
                "costs": costs,
                "processing_time_ms": processing_time_ms,
                "logs": collector.export_text(),
            }
        )

    def validate(self, documents: List[DocumentMeta], *args, **kwargs):
        """Reject malformed input before any model call.

        Raises:
            InputValidationError: With every problem found
        """
        errors = validate_documents(documents)
        if errors:
            raise InputValidationError(errors)

    async def run(self, documents: List[DocumentMeta], context: ExtractionRunContext) -> ExtractionResult:
        """Run phases 0 to 3 and the validation passes."""
        summary = await DocumentPreparer(self.settings).prepare(documents)
        prepared = summary.documents
        if not prepared:
            raise DocumentPreparationError("No documents could be prepared for extraction")

        LOGGER.info(
            f"Estimated extraction cost: ${estimate_extraction_cost(prepared):.4f}",
            extra={"phase": 0},
        )

        client = self._get_client()
        context.rate_limiters = create_rate_limiters(self.settings)
        context.upload_cache = ContentUploadCache(
            client,
            concurrency=self.settings.upload_concurrency,
            wave_pause_seconds=self.settings.upload_wave_pause_seconds,
            ttl_seconds=self.settings.upload_cache_ttl_seconds,
        )
        validation: Dict[str, ValidationReport] = {}

        # Phase 1
        analyzer = StructureAnalyzer(
            client, context.tracker, context.upload_cache, context.rate_limiters, self.vocabulary, self.settings
        )
        structure = await analyzer.analyze(prepared)
        validation["structure"] = self._report(1, "structure", validate_structure(structure))

        # Phase 2
        extractor = ItemExtractor(client, context.tracker, context.rate_limiters, self.vocabulary, self.settings)
        raw_items, _stats = await extractor.extract(structure, prepared)
        validation["extraction"] = self._report(2, "extraction", validate_extraction(raw_items, structure))

        # Phase 3
        enricher = Enricher(
            client, context.tracker, context.upload_cache, context.rate_limiters, self.vocabulary, self.settings
        )
        items = await enricher.enrich(raw_items, prepared)
        validation["enrichment"] = self._report(3, "enrichment", validate_enrichment(items))
        validation["coverage"] = self._report(3, "coverage", validate_document_coverage(prepared, items))

        if not context.tracker.validate_real_costs():
            LOGGER.error("Cost validation failed: some API calls may have missing token data")

        costs = context.tracker.detailed_costs()
        LOGGER.info(
            f"Extraction complete: {len(items)} items, {costs.total_calls} calls, "
            f"{costs.total_tokens['input']}/{costs.total_tokens['output']} tokens, ${costs.total:.6f} "
            f"(${context.tracker.cost_per_item(len(items)):.6f} per item)"
        )

        return ExtractionResult(
            success=True,
            structure=structure,
            items=items,
            validation=validation,
        )

    def _get_client(self) -> GeminiClient:
        if self.client is None:
            self.client = GeminiClient.from_settings(self.settings)
        return self.client

    def _report(self, phase: int, label: str, report: ValidationReport) -> ValidationReport:
        if not report.is_valid:
            LOGGER.warning(f"{label.capitalize()} validation failed", extra={"phase": phase})
        for warning in report.warnings:
            LOGGER.warning(f"{label.capitalize()} check: {warning}", extra={"phase": phase})
        return report
