"""Validation passes run by the orchestrator after each phase.

Each pass is pure: it inspects a phase result, never raises, and returns a
ValidationReport. ``is_valid`` is False only when the result is unusable;
everything else is reported as a warning.
"""

from typing import Dict, List, Sequence

from menu_extraction.models.menu_models import FinalItem, MenuStructure, PreparedDocument, RawItem, ValidationReport

MIN_SECTION_CONFIDENCE = 0.5
MAX_SECTION_ITEMS = 500
MIN_OVERALL_CONFIDENCE = 0.6
MAX_TOTAL_ITEMS = 2000
MIN_EXTRACTION_RATE = 0.3
MAX_MISSING_PRICE_RATIO = 0.5
MIN_ENRICHED_RATIO = 0.1


def validate_structure(structure: MenuStructure) -> ValidationReport:
    """Check phase 1 output for empty or low-confidence structures."""
    warnings: List[str] = []
    if not structure.sections:
        return ValidationReport(is_valid=False, warnings=["No sections found"])

    for section in structure.sections:
        if section.confidence < MIN_SECTION_CONFIDENCE:
            warnings.append(f"Section '{section.name}' has low confidence ({section.confidence:.2f})")
        if section.estimated_item_count > MAX_SECTION_ITEMS:
            warnings.append(
                f"Section '{section.name}' has unusually many items ({section.estimated_item_count})"
            )

    if structure.overall_confidence < MIN_OVERALL_CONFIDENCE:
        warnings.append(f"Overall structure confidence is low ({structure.overall_confidence:.2f})")
    if structure.total_estimated_items > MAX_TOTAL_ITEMS:
        warnings.append(f"Very large menu detected ({structure.total_estimated_items} estimated items)")

    return ValidationReport(is_valid=True, warnings=warnings)


def validate_extraction(items: Sequence[RawItem], structure: MenuStructure) -> ValidationReport:
    """Compare phase 2 output against the phase 1 estimates."""
    warnings: List[str] = []
    if not items:
        return ValidationReport(is_valid=False, warnings=["No items were extracted"])

    estimated = structure.total_estimated_items
    if estimated > 0 and len(items) / estimated < MIN_EXTRACTION_RATE:
        warnings.append(
            f"Low extraction rate: {len(items)} items extracted, ~{estimated} expected"
        )

    counts: Dict[str, int] = {}
    for item in items:
        counts[item.section] = counts.get(item.section, 0) + 1
    for section in structure.sections:
        if counts.get(section.name, 0) == 0:
            warnings.append(f"Section '{section.name}' has no items")

    missing_price = sum(1 for item in items if _is_zero_price(item.price))
    if missing_price / len(items) > MAX_MISSING_PRICE_RATIO:
        warnings.append(f"{missing_price} of {len(items)} items have no price")

    return ValidationReport(is_valid=True, warnings=warnings)


def validate_enrichment(items: Sequence[FinalItem]) -> ValidationReport:
    """Check that phase 3 actually added structure to the items."""
    warnings: List[str] = []
    if not items:
        return ValidationReport(is_valid=True, warnings=["No items to enrich"])

    without_sizes = [item.name for item in items if not item.sizes]
    if without_sizes:
        return ValidationReport(
            is_valid=False,
            warnings=[f"{len(without_sizes)} items have no size options"],
        )

    enriched = sum(1 for item in items if len(item.sizes) > 1 or item.modifier_groups)
    if enriched / len(items) < MIN_ENRICHED_RATIO:
        warnings.append(
            f"Only {enriched} of {len(items)} items have multiple sizes or modifier groups"
        )

    return ValidationReport(is_valid=True, warnings=warnings)


def validate_document_coverage(
    documents: Sequence[PreparedDocument],
    items: Sequence[RawItem],
) -> ValidationReport:
    """Warn about input documents that produced no items."""
    produced = {item.source_info.document_id for item in items}
    warnings = [
        f"Document {doc.name} ({doc.id}) yielded no items"
        for doc in documents
        if doc.id not in produced
    ]
    return ValidationReport(is_valid=True, warnings=warnings)


def _is_zero_price(price: str) -> bool:
    try:
        return float(str(price).replace("$", "").replace(",", "").strip() or 0) == 0
    except ValueError:
        return True
