"""Phase 3: add size options and modifier groups to raw items.

The first attempt is one pro-tier call covering every item, addressed by
positional id. If that call fails or its response cannot be decoded, items
are enriched in sequential batches. Each batch sees the modifier groups
found by the batches before it plus short excerpts of the documents its
items came from, and returned group names are folded into that state so
near-identical names collapse onto the first spelling.
"""

import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.core.gemini_client import Attachment, GeminiClient
from menu_extraction.core.rate_limiter import RateLimiter
from menu_extraction.models.menu_models import (
    FinalItem,
    ModelTier,
    ModifierGroup,
    PreparedDocument,
    RawItem,
    SizeOption,
)
from menu_extraction.models.response_models import (
    EnrichedItemResponse,
    ModifierGroupResponse,
    SizeResponse,
    decode_enrichment,
)
from menu_extraction.prompts.extraction_prompts import build_enrichment_prompt
from menu_extraction.services.cost_tracker import TokenCostTracker
from menu_extraction.services.pipeline.batch_processor import BatchProcessor
from menu_extraction.services.upload_cache import ContentUploadCache
from menu_extraction.services.vocabulary import DEFAULT_SIZE, VocabularyProvider
from menu_extraction.utils.json_parser import parse_json_array
from menu_extraction.utils.logging import get_logger
from menu_extraction.utils.token_estimator import can_fit_in_limit, estimate_text_tokens

LOGGER = get_logger(__name__)

SINGLE_CALL_MAX_OUTPUT_TOKENS = 32000
BATCH_MAX_OUTPUT_TOKENS = 8000

CONTEXT_MAX_TOKENS = 2000
CONTEXT_PAGE_CHARS = 500
CONTEXT_SHEET_LINES = 10

# Canonical group name -> merged group
ModifierState = Dict[str, ModifierGroup]


@dataclass
class EnrichmentStats:
    mode: str = "single"
    batches: int = 0
    failed_batches: int = 0
    unmatched_items: int = 0


def name_similarity(a: str, b: str) -> float:
    """Similarity in [0, 1] of two group names, ignoring case and word order."""
    a, b = a.strip().lower(), b.strip().lower()
    return max(Levenshtein.normalized_similarity(a, b), fuzz.token_sort_ratio(a, b) / 100.0)


def canonical_group_name(name: str, known: Iterable[str], threshold: float) -> Optional[str]:
    """Return the known group name ``name`` should be folded into, if any.

    An exact case-insensitive match wins; otherwise the most similar known
    name scoring at least ``threshold``.

    Example:
        >>> canonical_group_name("Protein Add-On", ["Add Protein", "Sauces"], 0.8)
        'Add Protein'
    """
    lowered = name.strip().lower()
    best: Optional[str] = None
    best_score = 0.0
    for candidate in known:
        if candidate.lower() == lowered:
            return candidate
        score = name_similarity(name, candidate)
        if score >= threshold and score > best_score:
            best, best_score = candidate, score
    return best


def merge_modifier_state(
    state: ModifierState,
    groups: Sequence[ModifierGroup],
    threshold: float,
) -> Tuple[ModifierState, List[ModifierGroup]]:
    """Fold one item's modifier groups into the accumulated state.

    ``state`` is not modified.

    Returns:
        Tuple of (new state, the item's groups renamed to canonical names)
    """
    merged = dict(state)
    item_groups: Dict[str, ModifierGroup] = {}

    for group in groups:
        name = canonical_group_name(group.name, merged.keys(), threshold) or group.name.strip()
        if name != group.name:
            LOGGER.debug(f"Folding modifier group '{group.name}' into '{name}'", extra={"phase": 3})

        existing = merged.get(name)
        merged[name] = _merge_groups(existing, group, name) if existing else group.model_copy(update={"name": name})

        own = item_groups.get(name)
        item_groups[name] = _merge_groups(own, group, name) if own else group.model_copy(update={"name": name})

    return merged, list(item_groups.values())


def _merge_groups(base: ModifierGroup, other: ModifierGroup, name: str) -> ModifierGroup:
    seen = {option.lower() for option in base.options}
    options = list(base.options)
    for option in other.options:
        if option.lower() not in seen:
            seen.add(option.lower())
            options.append(option)
    return ModifierGroup(
        name=name,
        options=options,
        required=base.required or other.required,
        multi_select=base.multi_select or other.multi_select,
    )


def to_modifier_groups(responses: Sequence[ModifierGroupResponse]) -> List[ModifierGroup]:
    return [
        ModifierGroup(
            name=response.name.strip(),
            options=[option for option in response.options if option],
            required=response.required,
            multi_select=response.multi_select,
        )
        for response in responses
        if response.name.strip()
    ]


def find_relevant_context(
    items: Sequence[RawItem],
    documents: Sequence[PreparedDocument],
    max_tokens: int = CONTEXT_MAX_TOKENS,
) -> str:
    """Excerpts of the documents the items came from, within a token budget.

    Text pages contribute their first 500 characters and sheets their first
    10 lines. When the items carry page or sheet provenance only those pages
    or sheets are used. Documents are added whole, in first-reference order,
    until the next one would exceed the budget.
    """
    documents_by_id = {doc.id: doc for doc in documents}
    context = ""
    used_tokens = 0

    for doc_id in dict.fromkeys(item.source_info.document_id for item in items):
        doc = documents_by_id.get(doc_id)
        if doc is None:
            continue
        sources = [item.source_info for item in items if item.source_info.document_id == doc_id]
        excerpt = ""

        if doc.pages:
            pages = {source.page for source in sources if source.page}
            for page in doc.pages:
                if pages and page.page_number not in pages:
                    continue
                if not page.is_image and page.content:
                    excerpt += f"Page {page.page_number}: {page.content[:CONTEXT_PAGE_CHARS]}...\n"
        elif doc.sheets:
            sheets = {source.sheet for source in sources if source.sheet}
            for sheet in doc.sheets:
                if sheets and sheet.name not in sheets:
                    continue
                lines = "\n".join(sheet.content.split("\n")[:CONTEXT_SHEET_LINES])
                excerpt += f'Sheet "{sheet.name}":\n{lines}\n'

        if not excerpt:
            continue
        block = f"\n--- {doc.name} ---\n{excerpt}"
        if not can_fit_in_limit(block, max_tokens - used_tokens):
            context += "\n... (additional context truncated)\n"
            break
        context += block
        used_tokens += estimate_text_tokens(block)

    return context


class Enricher:
    """Runs phase 3 over the de-duplicated raw items."""

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
        self.stats = EnrichmentStats()

    async def enrich(self, items: List[RawItem], documents: List[PreparedDocument]) -> List[FinalItem]:
        """Enrich every item. Always returns one FinalItem per input item."""
        if not items:
            return []

        start_time = time.time()
        final_items: Optional[List[FinalItem]] = None
        try:
            final_items = await self._enrich_single_call(items, documents)
            if final_items is None:
                LOGGER.warning("Single-call enrichment response could not be decoded", extra={"phase": 3})
        except Exception as e:
            LOGGER.warning(f"Single-call enrichment failed: {e}", extra={"phase": 3})

        if final_items is None:
            LOGGER.info(
                f"Falling back to sequential enrichment in batches of {self.settings.enrichment_batch_size}",
                extra={"phase": 3},
            )
            self.stats.mode = "sequential"
            final_items = await self.enrich_sequentially(items, documents)

        LOGGER.info(
            f"Enriched {len(final_items)} items ({self.stats.mode}) in {time.time() - start_time:.2f}s",
            extra={"phase": 3},
        )
        self.tracker.log_phase_cost(3, "Size & Modifier Enrichment")
        return final_items

    async def enrich_sequentially(
        self,
        items: List[RawItem],
        documents: Optional[List[PreparedDocument]] = None,
    ) -> List[FinalItem]:
        """Enrich items batch by batch, threading the modifier state through.

        ``state_0`` is empty and ``state_i = merge(state_{i-1}, enrich(batch_i,
        state_{i-1}))``. A failed batch gets default sizes and leaves the
        state unchanged.
        """
        state: ModifierState = {}
        final_items: List[FinalItem] = []
        batches = BatchProcessor.create_batches(items, self.settings.enrichment_batch_size)

        for index, batch in enumerate(batches, start=1):
            self.stats.batches += 1
            ids = [str(position) for position in range(len(batch))]
            context = find_relevant_context(batch, documents or [])
            try:
                responses = await self._enrich_batch(batch, ids, list(state.keys()), context)
            except Exception as e:
                LOGGER.warning(
                    f"Enrichment batch {index}/{len(batches)} failed, using default sizes: {e}",
                    extra={"phase": 3},
                )
                responses = {}
            if not responses:
                self.stats.failed_batches += 1

            for item_id, item in zip(ids, batch):
                response = responses.get(item_id)
                groups = to_modifier_groups(response.modifier_groups) if response else []
                state, canonical = merge_modifier_state(state, groups, self.settings.modifier_similarity_threshold)
                final_items.append(self.to_final_item(item, response.sizes if response else [], canonical))

            LOGGER.info(
                f"Enrichment batch {index}/{len(batches)} done, {len(state)} modifier groups known",
                extra={"phase": 3},
            )

        return final_items

    async def _enrich_single_call(
        self,
        items: List[RawItem],
        documents: List[PreparedDocument],
    ) -> Optional[List[FinalItem]]:
        ids = [str(position) for position in range(len(items))]
        uploads = await self.upload_cache.upload_all(documents)
        attachments = [Attachment(mime_type=u.mime_type, uri=u.remote_uri) for u in uploads.values()]
        prompt = build_enrichment_prompt(items, ids, self.vocabulary, self.vocabulary.known_modifier_groups)

        result = await self.rate_limiters[ModelTier.PRO].run(
            self.client.generate,
            prompt,
            attachments=attachments,
            tier=ModelTier.PRO,
            temperature=0.1,
            max_output_tokens=SINGLE_CALL_MAX_OUTPUT_TOKENS,
            timeout=self.settings.call_timeout_seconds,
        )
        self.tracker.record_call(3, ModelTier.PRO, result.input_tokens, result.output_tokens)

        responses = self._decode(result.text)
        if not responses:
            return None

        state: ModifierState = {}
        final_items = []
        for item_id, item in zip(ids, items):
            response = responses.get(item_id)
            if response is None:
                self.stats.unmatched_items += 1
            groups = to_modifier_groups(response.modifier_groups) if response else []
            state, canonical = merge_modifier_state(state, groups, self.settings.modifier_similarity_threshold)
            final_items.append(self.to_final_item(item, response.sizes if response else [], canonical))

        if self.stats.unmatched_items:
            LOGGER.warning(
                f"{self.stats.unmatched_items} items missing from the enrichment response, using default sizes",
                extra={"phase": 3},
            )
        return final_items

    async def _enrich_batch(
        self,
        batch: List[RawItem],
        ids: List[str],
        known_groups: List[str],
        context: str = "",
    ) -> Dict[str, EnrichedItemResponse]:
        prompt = build_enrichment_prompt(batch, ids, self.vocabulary, known_groups, context)
        result = await self.rate_limiters[ModelTier.PRO].run(
            self.client.generate,
            prompt,
            tier=ModelTier.PRO,
            temperature=0.1,
            max_output_tokens=BATCH_MAX_OUTPUT_TOKENS,
            timeout=self.settings.call_timeout_seconds,
        )
        self.tracker.record_call(3, ModelTier.PRO, result.input_tokens, result.output_tokens)
        return self._decode(result.text)

    def _decode(self, text: str) -> Dict[str, EnrichedItemResponse]:
        decoded = decode_enrichment(parse_json_array(text))
        if decoded.rejected:
            LOGGER.warning(f"Dropped {decoded.rejected} invalid enrichment entries", extra={"phase": 3})
        return {response.id: response for response in decoded.items}

    def to_final_item(
        self,
        item: RawItem,
        sizes: Sequence[SizeResponse],
        groups: List[ModifierGroup],
    ) -> FinalItem:
        """Build a FinalItem with coerced vocabulary and exactly one default size."""
        options: List[SizeOption] = []
        seen = set()
        for size in sizes:
            label = self.vocabulary.coerce_size(size.size)
            if label != size.size:
                LOGGER.debug(f"Size '{size.size}' of '{item.name}' coerced to '{label}'", extra={"phase": 3})
            if label in seen:
                continue
            seen.add(label)
            options.append(SizeOption(size=label, price=size.price, is_default=size.is_default))

        if not options:
            options = [SizeOption(size=DEFAULT_SIZE, price=item.price, is_default=True)]

        default_index = next((i for i, option in enumerate(options) if option.is_default), 0)
        options = [
            option.model_copy(update={"is_default": i == default_index})
            for i, option in enumerate(options)
        ]

        category = self.vocabulary.coerce_category(item.category)
        if category != item.category:
            LOGGER.warning(
                f"Category '{item.category}' of '{item.name}' coerced to '{category}'",
                extra={"phase": 3},
            )

        return FinalItem(
            name=item.name,
            description=item.description,
            price=item.price,
            category=category,
            section=item.section,
            source_info=item.source_info,
            sizes=options,
            modifier_groups=groups,
        )
