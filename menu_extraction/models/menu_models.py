"""Data models for the menu extraction pipeline.

This module defines the records that flow between the pipeline phases:
input descriptors, prepared documents, menu structure, extraction batches,
raw and enriched items, and the cost ledger.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class DocumentKind(str, Enum):
    """Normalized document families handled by the pipeline."""

    PDF = "pdf"
    SPREADSHEET = "spreadsheet"
    IMAGE = "image"


class ModelTier(str, Enum):
    """Cost/capability classes of Gemini models."""

    PRO = "pro"
    FLASH = "flash"
    FLASH_LITE = "flash_lite"


class DocumentMeta(BaseModel):
    """Input descriptor supplied by the caller."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Optional[str] = Field(None, description="Caller-assigned document id")
    name: Optional[str] = Field(None, description="Original file name")
    mime_type: Optional[str] = Field(None, alias="mimeType", description="Declared MIME type")
    content: Optional[str] = Field(None, description="Base64 encoded file bytes")
    url: Optional[str] = Field(None, description="URL to fetch the file from")


class PreparedPage(BaseModel):
    """A PDF page (or the whole PDF) as text or as an image payload."""

    page_number: int = Field(..., ge=1, description="1-indexed page number")
    content: str = Field(..., description="Extracted text, or base64 bytes when is_image")
    is_image: bool = Field(False, description="Whether content must be read by a vision call")
    mime_type: Optional[str] = Field(None, description="MIME type of the image payload")
    token_estimate: int = Field(0, ge=0)


class PreparedSheet(BaseModel):
    """A spreadsheet sheet rendered as header-preserving CSV text."""

    name: str
    content: str = Field(..., description="CSV text; the first line is the header row")
    row_count: int = Field(..., ge=0, description="Number of non-empty rows including the header")
    token_estimate: int = Field(0, ge=0)

    @property
    def header(self) -> str:
        return self.content.split("\n", 1)[0]

    @property
    def data_rows(self) -> List[str]:
        return self.content.split("\n")[1:]


class PreparedDocument(BaseModel):
    """Phase-agnostic form of an input document. Read-only after phase 0."""

    id: str
    name: str
    kind: DocumentKind
    mime_type: str
    pages: Optional[List[PreparedPage]] = None
    sheets: Optional[List[PreparedSheet]] = None
    content: Optional[str] = Field(None, description="Base64 payload for image documents")
    raw_bytes: bytes = Field(b"", repr=False, description="Original file bytes, used for uploads")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        if self.pages:
            return sum(p.token_estimate for p in self.pages)
        if self.sheets:
            return sum(s.token_estimate for s in self.sheets)
        return self.metadata.get("total_tokens", 0)

    def has_payload(self) -> bool:
        return bool(self.pages) or bool(self.sheets) or bool(self.content)

    def get_sheet(self, name: str) -> Optional[PreparedSheet]:
        for sheet in self.sheets or []:
            if sheet.name == name:
                return sheet
        return None


class PreparationSummary(BaseModel):
    """Output of phase 0 with aggregate counts for planning."""

    documents: List[PreparedDocument] = Field(default_factory=list)
    total_tokens: int = 0
    total_pages: int = 0
    total_sheets: int = 0
    dropped: List[str] = Field(default_factory=list, description="Ids of documents that failed preparation")
    warnings: List[str] = Field(default_factory=list)


class DocumentLocation(BaseModel):
    """Reference to a region of a document (pages or sheets)."""

    document_id: str
    page_numbers: Optional[List[int]] = None
    sheet_names: Optional[List[str]] = None


class MenuSection(BaseModel):
    """A named group of menu items with its source locations."""

    name: str = Field(..., min_length=1)
    document_locations: List[DocumentLocation]
    estimated_item_count: int = Field(0, ge=0)
    is_oversized: bool = Field(False, description="True when more than 100 items are expected")
    confidence: float = Field(0.8, ge=0.0, le=1.0)
    description: Optional[str] = None


class MenuStructure(BaseModel):
    """Coverage-complete table of contents produced by phase 1."""

    sections: List[MenuSection]
    overall_confidence: float = Field(0.8, ge=0.0, le=1.0)
    total_estimated_items: int = 0

    def referenced_document_ids(self) -> set:
        return {
            location.document_id
            for section in self.sections
            for location in section.document_locations
        }


class ExtractionBatch(BaseModel):
    """One unit of content submitted as a single phase 2 call."""

    id: str
    section: MenuSection
    payload: str = Field(..., description="Text content or base64 bytes")
    is_image: bool = False
    mime_type: Optional[str] = None
    token_estimate: int = 0
    model_tier: ModelTier
    source_refs: List[DocumentLocation]
    target_sections: List[str] = Field(
        default_factory=list,
        description="Sections whose items may appear in this payload; the first is the owner",
    )
    row_range: Optional[Tuple[int, int]] = Field(
        None,
        description="Inclusive 1-indexed data row range for spreadsheet chunks",
    )


class SourceInfo(BaseModel):
    """Provenance of an extracted item."""

    document_id: str
    page: Optional[int] = None
    sheet: Optional[str] = None


class RawItem(BaseModel):
    """Menu item as extracted by phase 2, not yet enriched."""

    name: str
    description: str = ""
    price: str = "0"
    category: str
    section: str
    source_info: SourceInfo


class SizeOption(BaseModel):
    size: str
    price: str
    is_default: bool = False


class ModifierGroup(BaseModel):
    name: str
    options: List[str] = Field(default_factory=list)
    required: bool = False
    multi_select: bool = False


class FinalItem(RawItem):
    """Enriched item. Always carries at least one size option."""

    sizes: List[SizeOption] = Field(..., min_length=1)
    modifier_groups: List[ModifierGroup] = Field(default_factory=list)


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    cost: float = 0.0


class PhaseCost(BaseModel):
    input: int = 0
    output: int = 0
    cost: float = 0.0
    calls: int = 0


class ExtractionCosts(BaseModel):
    """Per-phase cost breakdown. ``total`` is the sum of the three phases."""

    phase1: PhaseCost = Field(default_factory=PhaseCost)
    phase2: PhaseCost = Field(default_factory=PhaseCost)
    phase3: PhaseCost = Field(default_factory=PhaseCost)
    total: float = 0.0
    total_calls: int = 0
    total_tokens: Dict[str, int] = Field(default_factory=lambda: {"input": 0, "output": 0})


class CachedUpload(BaseModel):
    """Reference to a document stored in the Gemini Files API."""

    document_id: str
    remote_uri: str
    mime_type: str
    uploaded_at: datetime


class ValidationReport(BaseModel):
    is_valid: bool = True
    warnings: List[str] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    """Top-level result of a run. Costs are populated even on failure."""

    success: bool
    structure: Optional[MenuStructure] = None
    items: Optional[List[FinalItem]] = None
    costs: ExtractionCosts = Field(default_factory=ExtractionCosts)
    processing_time_ms: int = 0
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list, description="Input validation errors, if any")
    logs: str = ""
    validation: Dict[str, ValidationReport] = Field(default_factory=dict)
