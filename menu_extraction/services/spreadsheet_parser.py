"""Spreadsheet reading and direct row-to-item conversion.

Phase 0 uses the workbook reader to render sheets as CSV text; xlsx is
read with openpyxl and legacy xls through pandas with the xlrd engine. The
row conversion (column detection, price parsing, fuzzy de-duplication) is
the deterministic leaf routine phase 2 falls back to when a sheet batch
cannot be extracted by the model.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

import openpyxl
import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException
from rapidfuzz import fuzz

from menu_extraction.core.exceptions import DocumentPreparationError, UnsupportedDocumentError
from menu_extraction.models.menu_models import FinalItem, RawItem, SizeOption, SourceInfo
from menu_extraction.services.vocabulary import DEFAULT_CATEGORY, VocabularyProvider
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T", bound=RawItem)

CSV_MIME_TYPES = {"text/csv", "application/csv", "text/comma-separated-values"}
XLS_MIME_TYPE = "application/vnd.ms-excel"

# File signatures: OLE2 compound document (legacy xls) and zip (xlsx)
OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
ZIP_SIGNATURE = b"PK\x03\x04"

NAME_PATTERNS = ("name", "item", "product", "menu item", "dish", "title")
DESCRIPTION_PATTERNS = ("description", "desc", "details", "ingredients")
PRICE_PATTERNS = ("price", "cost", "amount", "$")
CATEGORY_PATTERNS = ("category", "type", "group", "classification")
SECTION_PATTERNS = ("section", "menu", "area", "division")
SIZE_PATTERNS = ("size", "portion", "serving")

HEADER_NAMES = {"item name", "name", "menu item", "item"}

CATEGORY_MAPPINGS = {
    "tacos": "Entrees",
    "taco": "Entrees",
    "burritos": "Entrees",
    "burrito": "Entrees",
    "quesadillas": "Entrees",
    "quesadilla": "Entrees",
    "appetizer": "Appetizers",
    "appetizers": "Appetizers",
    "starter": "Appetizers",
    "starters": "Appetizers",
    "salad": "Salads",
    "salads": "Salads",
    "entree": "Entrees",
    "entrees": "Entrees",
    "main": "Entrees",
    "main course": "Entrees",
    "side": "Sides",
    "sides": "Sides",
    "dessert": "Desserts",
    "desserts": "Desserts",
}

DUPLICATE_NAME_SIMILARITY = 0.85

NUMERIC_ONLY = re.compile(r"^\d+$")
NON_PRICE_CHARS = re.compile(r"[^0-9.]")


@dataclass
class SheetTable:
    """A sheet's header row plus its non-empty data rows."""

    name: str
    headers: List[str]
    rows: List[List[str]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows) + 1


@dataclass
class ColumnMapping:
    name: int = 0
    description: Optional[int] = None
    price: Optional[int] = None
    category: Optional[int] = None
    section: Optional[int] = None
    size: Optional[int] = None


def is_spreadsheet_mime(mime_type: str) -> bool:
    mime_type = (mime_type or "").lower()
    return (
        mime_type in CSV_MIME_TYPES
        or "spreadsheet" in mime_type
        or mime_type == XLS_MIME_TYPE
    )


def is_legacy_xls(data: bytes, mime_type: str, name: str = "") -> bool:
    """True for BIFF workbooks, which openpyxl cannot read.

    The file signature wins over the declared type, since xlsx files are
    often sent as ``application/vnd.ms-excel``.
    """
    if data.startswith(OLE2_SIGNATURE):
        return True
    if data.startswith(ZIP_SIGNATURE):
        return False
    return mime_type.lower() == XLS_MIME_TYPE or name.lower().endswith(".xls")


def read_workbook(data: bytes, mime_type: str, name: str = "Sheet1") -> List[SheetTable]:
    """Read CSV, xlsx or legacy xls bytes into sheet tables.

    Sheets without any non-empty row are omitted; callers decide how to
    report that.

    Raises:
        UnsupportedDocumentError: If the workbook format cannot be read
        DocumentPreparationError: If the file is corrupt
    """
    if mime_type.lower() in CSV_MIME_TYPES:
        return _read_csv(data, PurePath(name).stem or "Sheet1")

    if is_legacy_xls(data, mime_type, name):
        return _read_xls(data, name)

    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except InvalidFileException as e:
        raise UnsupportedDocumentError(f"Unsupported workbook format for {name}: {e}", original_error=e)
    except Exception as e:
        raise DocumentPreparationError(f"Failed to read workbook {name}: {e}", original_error=e)

    tables = []
    try:
        for worksheet in workbook.worksheets:
            rows = [[_cell_to_str(value) for value in row] for row in worksheet.iter_rows(values_only=True)]
            table = _build_table(worksheet.title, rows)
            if table is None:
                LOGGER.warning(f"Skipping empty sheet '{worksheet.title}' in {name}")
                continue
            tables.append(table)
    finally:
        workbook.close()
    return tables


def sheet_to_csv(table: SheetTable) -> str:
    """Render a sheet as CSV text, header first, one line per row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(table.headers)
    writer.writerows(table.rows)
    return buffer.getvalue().rstrip("\n")


def detect_columns(headers: Sequence[str]) -> ColumnMapping:
    """Map menu fields to column indexes by header keywords.

    The name column defaults to the first column when no header matches.
    A column is assigned to at most one field.
    """
    lowered = [h.lower() for h in headers]
    taken: set = set()

    def find(patterns: Iterable[str]) -> Optional[int]:
        for index, header in enumerate(lowered):
            if index in taken:
                continue
            if any(pattern in header for pattern in patterns):
                taken.add(index)
                return index
        return None

    name_index = find(NAME_PATTERNS)
    if name_index is None:
        name_index = 0
        taken.add(0)

    return ColumnMapping(
        name=name_index,
        description=find(DESCRIPTION_PATTERNS),
        price=find(PRICE_PATTERNS),
        category=find(CATEGORY_PATTERNS),
        section=find(SECTION_PATTERNS),
        size=find(SIZE_PATTERNS),
    )


def normalize_category(value: str, vocabulary: Optional[VocabularyProvider] = None) -> str:
    """Map a free-text category onto the allowed vocabulary.

    Example:
        >>> normalize_category("Tacos")
        'Entrees'
    """
    if not value or not value.strip():
        return DEFAULT_CATEGORY

    vocabulary = vocabulary or VocabularyProvider()
    normalized = value.strip().lower()

    if normalized in CATEGORY_MAPPINGS:
        return CATEGORY_MAPPINGS[normalized]

    for allowed in vocabulary.allowed_categories:
        if allowed.lower() == normalized:
            return allowed

    if len(normalized) >= 3:
        for allowed in vocabulary.allowed_categories:
            candidate = allowed.lower()
            if normalized in candidate or candidate in normalized:
                return allowed

    return DEFAULT_CATEGORY


def parse_price(value: Any) -> str:
    """Strip currency symbols and format as a two-decimal string.

    Example:
        >>> parse_price("$12.5")
        '12.50'
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{value:.2f}"

    digits = NON_PRICE_CHARS.sub("", str(value or ""))
    try:
        return f"{float(digits):.2f}"
    except ValueError:
        return "0.00"


def convert_to_items(
    table: SheetTable,
    document_id: str,
    vocabulary: Optional[VocabularyProvider] = None,
) -> List[FinalItem]:
    """Convert sheet rows directly into menu items.

    Rows with an empty name cell, rows repeating the header and rows whose
    name is purely numeric (row numbers) are skipped.
    """
    vocabulary = vocabulary or VocabularyProvider()
    mapping = detect_columns(table.headers)
    header_name = table.headers[mapping.name].strip().lower() if table.headers else ""

    items = []
    skipped = 0
    for row in table.rows:
        name = _cell(row, mapping.name)
        if not name:
            skipped += 1
            continue
        if name.lower() == header_name or name.lower() in HEADER_NAMES:
            skipped += 1
            continue
        if NUMERIC_ONLY.match(name):
            skipped += 1
            continue

        category = (
            normalize_category(_cell(row, mapping.category), vocabulary)
            if mapping.category is not None
            else "Entrees"
        )
        section = _cell(row, mapping.section) if mapping.section is not None else ""
        raw_price = _cell(row, mapping.price) if mapping.price is not None else ""
        price = parse_price(raw_price) if raw_price else "0.00"
        size = vocabulary.coerce_size(_cell(row, mapping.size) or "Regular") if raw_price else "N/A"

        items.append(
            FinalItem(
                name=name,
                description=_cell(row, mapping.description) if mapping.description is not None else "",
                price=price,
                category=category,
                section=section or "Main Menu",
                source_info=SourceInfo(document_id=document_id, sheet=table.name),
                sizes=[SizeOption(size=size, price=price, is_default=True)],
            )
        )

    LOGGER.info(f"Converted sheet '{table.name}': {len(items)} items, {skipped} rows skipped")
    return items


def deduplicate_items(items: List[T], price_of: Optional[Callable[[T], str]] = None) -> List[T]:
    """Drop near-duplicate items.

    An item is a duplicate of an earlier one when their names are more than
    85% similar and both category and price match.
    """
    price_of = price_of or (lambda item: item.price)
    kept: List[T] = []
    for item in items:
        duplicate = any(
            existing.category == item.category
            and price_of(existing) == price_of(item)
            and fuzz.ratio(existing.name.lower(), item.name.lower()) / 100.0 > DUPLICATE_NAME_SIMILARITY
            for existing in kept
        )
        if duplicate:
            LOGGER.debug(f"Dropping duplicate item '{item.name}'")
            continue
        kept.append(item)

    if len(kept) < len(items):
        LOGGER.info(f"Removed {len(items) - len(kept)} duplicate items")
    return kept


def parse_spreadsheet_to_items(
    data: bytes,
    mime_type: str,
    name: str,
    document_id: str,
    vocabulary: Optional[VocabularyProvider] = None,
) -> List[FinalItem]:
    """Read a spreadsheet and convert every sheet into de-duplicated items."""
    items: List[FinalItem] = []
    for table in read_workbook(data, mime_type, name):
        items.extend(convert_to_items(table, document_id, vocabulary))
    return deduplicate_items(items)


def parse_csv_table(text: str, sheet_name: str) -> Optional[SheetTable]:
    """Parse CSV text (header first) back into a sheet table, or None if empty."""
    rows = [list(row) for row in csv.reader(io.StringIO(text))]
    return _build_table(sheet_name, rows)


def _read_csv(data: bytes, sheet_name: str) -> List[SheetTable]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1")

    table = parse_csv_table(text, sheet_name)
    if table is None:
        LOGGER.warning(f"CSV document '{sheet_name}' has no rows")
        return []
    return [table]


def _read_xls(data: bytes, name: str) -> List[SheetTable]:
    try:
        frames = pd.read_excel(io.BytesIO(data), sheet_name=None, header=None, dtype=object, engine="xlrd")
    except Exception as e:
        raise DocumentPreparationError(f"Failed to read legacy workbook {name}: {e}", original_error=e)

    tables = []
    for sheet_name, frame in frames.items():
        rows = [
            [_cell_to_str(None if pd.isna(value) else value) for value in row]
            for row in frame.itertuples(index=False, name=None)
        ]
        table = _build_table(str(sheet_name), rows)
        if table is None:
            LOGGER.warning(f"Skipping empty sheet '{sheet_name}' in {name}")
            continue
        tables.append(table)
    return tables


def _build_table(name: str, rows: List[List[str]]) -> Optional[SheetTable]:
    cleaned = [[_clean_cell(value) for value in row] for row in rows]
    non_empty = [row for row in cleaned if any(value for value in row)]
    if not non_empty:
        return None

    raw_headers = non_empty[0]
    width = max(len(row) for row in non_empty)
    # Trim trailing columns that are empty everywhere
    while width > 1 and all(len(row) < width or not row[width - 1] for row in non_empty):
        width -= 1

    headers = [
        (raw_headers[i] if i < len(raw_headers) and raw_headers[i] else f"Column_{i + 1}")
        for i in range(width)
    ]
    data_rows = []
    for row in non_empty[1:]:
        padded = (row + [""] * width)[:width]
        if any(padded):
            data_rows.append(padded)
    return SheetTable(name=name, headers=headers, rows=data_rows)


def _cell(row: List[str], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    return row[index]


def _clean_cell(value: Any) -> str:
    # Embedded newlines would break line-based row chunking
    return str(value or "").replace("\r", " ").replace("\n", " ").strip()


def _cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)
