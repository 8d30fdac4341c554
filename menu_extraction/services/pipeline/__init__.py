"""Extraction pipeline phases.

- DocumentPreparer: phase 0, normalizes raw documents
- StructureAnalyzer: phase 1, finds menu sections
- ItemExtractor: phase 2, extracts raw items per section
- Enricher: phase 3, adds sizes and modifier groups
"""

from menu_extraction.services.pipeline.document_preparer import DocumentPreparer
from menu_extraction.services.pipeline.enricher import Enricher
from menu_extraction.services.pipeline.item_extractor import ItemExtractor
from menu_extraction.services.pipeline.structure_analyzer import StructureAnalyzer

__all__ = [
    "DocumentPreparer",
    "StructureAnalyzer",
    "ItemExtractor",
    "Enricher",
]
