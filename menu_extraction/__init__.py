"""Staged menu extraction from PDFs, images and spreadsheets using Gemini."""

from menu_extraction.models.menu_models import DocumentMeta, ExtractionResult, FinalItem
from menu_extraction.services.extraction_service import MenuExtractionService

__version__ = "0.1.0"

__all__ = [
    "DocumentMeta",
    "ExtractionResult",
    "FinalItem",
    "MenuExtractionService",
]
