"""Response shapes expected from the model in each phase.

Each phase decodes raw model JSON through exactly one of these models so that
loosely-typed data is rejected or repaired at the boundary.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


def _coerce_price(value: Any) -> str:
    if value is None or value == "":
        return "0"
    return str(value).strip()


class LocationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    document_id: str = Field(..., alias="documentId", min_length=1)
    page_numbers: Optional[List[int]] = Field(None, alias="pageNumbers")
    sheet_names: Optional[List[str]] = Field(None, alias="sheetNames")


class SectionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    document_locations: List[LocationResponse] = Field(..., alias="documentLocations")
    description: Optional[str] = None
    estimated_items: int = Field(0, alias="estimatedItems")
    is_super_big: bool = Field(False, alias="isSuperBig")
    confidence: float = 0.8

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("section name is blank")
        return value.strip()

    @field_validator("estimated_items", mode="before")
    @classmethod
    def default_estimate(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        if value is None:
            return 0.8
        return min(1.0, max(0.0, float(value)))


class StructureResponse(BaseModel):
    """Phase 1 response: ``{"sections": [...], "overallConfidence": 0.9}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sections: List[SectionResponse]
    overall_confidence: float = Field(0.8, alias="overallConfidence")

    @field_validator("overall_confidence", mode="before")
    @classmethod
    def clamp_overall(cls, value: Any) -> float:
        if value is None:
            return 0.8
        return min(1.0, max(0.0, float(value)))


class ExtractedItemResponse(BaseModel):
    """One element of the phase 2 JSON array."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = ""
    price: str = "0"
    category: Optional[str] = None
    section: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("item name is blank")
        return value.strip()

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, value: Any) -> str:
        return _coerce_price(value)


class BatchItemResponse(BaseModel):
    """Phase 2 response: a bare JSON array of items."""

    items: List[ExtractedItemResponse] = Field(default_factory=list)
    rejected: int = Field(0, description="Elements dropped because they were not valid items")


class SizeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    size: str = "N/A"
    price: str = "0"
    is_default: bool = Field(False, alias="isDefault")

    @field_validator("size", mode="before")
    @classmethod
    def coerce_size(cls, value: Any) -> str:
        return "N/A" if value is None else str(value).strip()

    @field_validator("price", mode="before")
    @classmethod
    def coerce_price(cls, value: Any) -> str:
        return _coerce_price(value)


class ModifierGroupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    options: List[str] = Field(default_factory=list)
    required: bool = False
    multi_select: bool = Field(False, alias="multiSelect")

    @field_validator("options", mode="before")
    @classmethod
    def coerce_options(cls, value: Any) -> List[str]:
        if not value:
            return []
        options = []
        for option in value:
            if isinstance(option, dict):
                label = str(option.get("name", "")).strip()
                price = option.get("price")
                if label and price not in (None, "", 0, "0"):
                    label = f"{label} (+${price})"
                if label:
                    options.append(label)
            elif option is not None:
                options.append(str(option).strip())
        return options


class EnrichedItemResponse(BaseModel):
    """One element of the phase 3 response, keyed by positional id."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    sizes: List[SizeResponse] = Field(default_factory=list)
    modifier_groups: List[ModifierGroupResponse] = Field(default_factory=list, alias="modifierGroups")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value).strip()


class EnrichmentResponse(BaseModel):
    """Phase 3 response: ``[{"id", "sizes", "modifierGroups"}]``."""

    items: List[EnrichedItemResponse] = Field(default_factory=list)
    rejected: int = 0


def decode_batch_items(elements: List[Any]) -> BatchItemResponse:
    """Validate each array element independently, dropping invalid ones."""
    items = []
    rejected = 0
    for element in elements:
        if not isinstance(element, dict):
            rejected += 1
            continue
        try:
            items.append(ExtractedItemResponse.model_validate(element))
        except ValidationError:
            rejected += 1
    return BatchItemResponse(items=items, rejected=rejected)


def decode_enrichment(elements: List[Any]) -> EnrichmentResponse:
    """Validate enrichment elements; elements without an id are dropped."""
    items = []
    rejected = 0
    for element in elements:
        if not isinstance(element, dict) or element.get("id") is None:
            rejected += 1
            continue
        try:
            items.append(EnrichedItemResponse.model_validate(element))
        except ValidationError:
            rejected += 1
    return EnrichmentResponse(items=items, rejected=rejected)
