# Prompts for the staged menu extraction pipeline.
# - Phase 1: STRUCTURE_ANALYSIS_SYSTEM_INSTRUCTION + build_structure_prompt
# - Phase 2: build_extraction_prompt (one per batch)
# - Phase 3: build_enrichment_prompt (single call and sequential fallback)
#
# Every prompt restates the allowed vocabularies and the exact JSON shape.
# Responses are always decoded through menu_extraction.models.response_models.

import json
from typing import Dict, List, Optional, Sequence

from menu_extraction.models.menu_models import DocumentKind, ExtractionBatch, PreparedDocument, RawItem
from menu_extraction.services.vocabulary import VocabularyProvider

# =============================================================================
# PHASE 1: STRUCTURE ANALYSIS
# =============================================================================
STRUCTURE_ANALYSIS_SYSTEM_INSTRUCTION = """You are a menu analysis expert. Analyze the menu document(s) and return ONLY a valid JSON response.

TASK: Identify menu sections from the provided document(s).

AVAILABLE CATEGORIES: {categories}

RESPONSE FORMAT: Return ONLY this JSON structure (no thinking, no explanation):
{{
  "sections": [
    {{
      "name": "Appetizers",
      "documentLocations": [
        {{
          "documentId": "USE_ACTUAL_DOCUMENT_ID_FROM_REFERENCE_INFO",
          "pageNumbers": [1, 2],
          "sheetNames": ["Menu"]
        }}
      ],
      "description": "Starter dishes and small plates",
      "estimatedItems": 15,
      "isSuperBig": false,
      "confidence": 0.95
    }}
  ],
  "overallConfidence": 0.9
}}

RULES:
- Use the exact documentId values from the DOCUMENT REFERENCE INFO in the user message.
- Only reference pageNumbers that exist for PDFs and sheetNames that exist for spreadsheets.
- Set isSuperBig to true when a section has more than 100 items.
- Every spreadsheet document must appear in at least one section."""


def build_structure_system_instruction(vocabulary: VocabularyProvider) -> str:
    return STRUCTURE_ANALYSIS_SYSTEM_INSTRUCTION.format(categories=", ".join(vocabulary.allowed_categories))


def describe_document(doc: PreparedDocument) -> str:
    """One-line reference entry for a prepared document."""
    if doc.kind == DocumentKind.PDF and doc.pages:
        pages = ", ".join(str(p.page_number) for p in doc.pages)
        return f'Document "{doc.id}" ({doc.name}): PDF with pages {pages}'
    if doc.kind == DocumentKind.SPREADSHEET and doc.sheets:
        sheets = ", ".join(f'"{s.name}"' for s in doc.sheets)
        return f'Document "{doc.id}" ({doc.name}): Spreadsheet with sheets {sheets}'
    if doc.kind == DocumentKind.IMAGE:
        return f'Document "{doc.id}" ({doc.name}): Image file'
    return f'Document "{doc.id}" ({doc.name}): {doc.kind.value}'


def build_structure_prompt(documents: Sequence[PreparedDocument], inline_content: Optional[Dict[str, str]] = None) -> str:
    """User message for phase 1.

    Args:
        documents: Prepared documents
        inline_content: Text for documents whose upload is unavailable, keyed by id
    """
    reference_info = "\n".join(describe_document(doc) for doc in documents)
    prompt = (
        "DOCUMENT REFERENCE INFO:\n"
        f"{reference_info}\n\n"
        "Please analyze these menu documents and identify all menu sections."
    )
    for doc_id, text in (inline_content or {}).items():
        prompt += f'\n\n--- Content of document "{doc_id}" ---\n{text}'
    return prompt


# =============================================================================
# PHASE 2: ITEM EXTRACTION
# =============================================================================
EXTRACTION_PROMPT = """You are an expert menu manager extracting items from the "{section}" section.

{section_context}TASK: Extract ONLY menu items that belong to the "{section}" section.

PREDEFINED CATEGORIES (use exact names):
{categories}

PREDEFINED SIZES (use exact names):
{sizes}

EXTRACTION RULES:
1. Extract item name, description, price, and category
2. Use only predefined categories - choose the best match
3. If size is mentioned in the item text, include it in description
4. Include any modifier/add-on text in the description
5. Set price to "0" if no price is visible
6. Ignore section headers and non-item text
7. Do NOT create separate size or modifier fields yet

IMPORTANT: Only extract items that clearly belong to "{section}".

Return ONLY a JSON array in this exact format:
[
  {{
    "name": "Caesar Salad",
    "description": "Romaine lettuce, parmesan, croutons, caesar dressing. Available in small or large.",
    "price": "12.99",
    "category": "Salads"
  }}
]"""

SHARED_SOURCE_BLOCK = """

This content is shared by the sections {sections}. Extract items of ALL of
these sections and add a "section" field to each item naming which one it
belongs to."""


def build_extraction_prompt(
    batch: ExtractionBatch,
    all_sections: Sequence[str],
    vocabulary: VocabularyProvider,
) -> str:
    section_context = (
        f"This menu has these sections: {', '.join(all_sections)}.\n\n"
        if len(all_sections) > 1
        else ""
    )
    prompt = EXTRACTION_PROMPT.format(
        section=batch.section.name,
        section_context=section_context,
        categories=", ".join(vocabulary.allowed_categories),
        sizes=", ".join(vocabulary.allowed_sizes),
    )
    if len(batch.target_sections) > 1:
        prompt += SHARED_SOURCE_BLOCK.format(sections=", ".join(f'"{s}"' for s in batch.target_sections))
    if batch.is_image:
        return prompt + "\n\nAnalyze the attached menu content."
    return prompt + "\n\nContent to extract from:\n" + batch.payload


# =============================================================================
# PHASE 3: SIZE AND MODIFIER ENRICHMENT
# =============================================================================
ENRICHMENT_PROMPT = """You are an expert menu consultant. Structure the sizes and modifier groups of these menu items.

PREDEFINED SIZES (use exact names):
{sizes}

SIZE RULES:
- Extract sizes from item descriptions and the attached menus (Small, Large, Glass, Bottle, etc.)
- Use ONLY predefined sizes; use "N/A" when the item has a single unnamed size
- Include the price of each size; mark exactly one size as isDefault
- If no sizes are mentioned, return one "N/A" size with the item's price

MODIFIER RULES:
- Look for choices like "choose X, Y, Z" or "add X for $Y"
- Group related modifiers (all toppings together, all sides together)
- Mark groups as required/optional and single/multi-select
- Include modifier prices in the option text, e.g. "Grilled Chicken (+$5)"
{known_groups}
Items (referenced by id):
{items}

Return ONLY a JSON array with one entry per item id, in this exact format
(do NOT repeat name, description or category):
[
  {{
    "id": "0",
    "sizes": [{{"size": "N/A", "price": "12.99", "isDefault": true}}],
    "modifierGroups": [
      {{"name": "Add Protein", "options": ["Grilled Chicken (+$5)", "Salmon (+$8)"], "required": false, "multiSelect": false}}
    ]
  }}
]"""

CONTEXT_BLOCK = """
RELEVANT MENU CONTENT (excerpts from the source documents, use them to find sizes and modifiers):
{context}
"""

KNOWN_GROUPS_BLOCK = """
EXISTING MODIFIER GROUPS (reuse these exact names when a group has the same meaning;
do not invent variants such as "Protein Add-On" for "Add Protein"):
{groups}
"""


def build_enrichment_prompt(
    items: Sequence[RawItem],
    ids: Sequence[str],
    vocabulary: VocabularyProvider,
    known_groups: Optional[List[str]] = None,
    context: str = "",
) -> str:
    compact = [
        {
            "id": item_id,
            "name": item.name,
            "description": item.description,
            "price": item.price,
            "category": item.category,
        }
        for item_id, item in zip(ids, items)
    ]
    groups_block = (
        KNOWN_GROUPS_BLOCK.format(groups="\n".join(f"- {name}" for name in known_groups))
        if known_groups
        else ""
    )
    context_block = CONTEXT_BLOCK.format(context=context.strip("\n")) if context else ""
    return ENRICHMENT_PROMPT.format(
        sizes=", ".join(vocabulary.allowed_sizes),
        known_groups=groups_block + context_block,
        items=json.dumps(compact, ensure_ascii=False, indent=1),
    )
