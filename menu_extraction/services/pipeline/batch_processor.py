"""Batch construction helpers for the extraction phases.

This module provides shared utilities for splitting work into batches:
fixed-size item batches for enrichment and token-bounded row chunks for
large spreadsheet sheets.
"""

import hashlib
from dataclasses import dataclass
from typing import List, TypeVar

from menu_extraction.models.menu_models import PreparedSheet
from menu_extraction.utils.logging import get_logger
from menu_extraction.utils.token_estimator import estimate_text_tokens

LOGGER = get_logger(__name__)

T = TypeVar('T')


@dataclass
class RowChunk:
    """A slice of a sheet's data rows, prefixed with the header row.

    ``start_row`` and ``end_row`` are 1-indexed, inclusive, and count data
    rows only (the header is row 0).
    """

    content: str
    start_row: int
    end_row: int
    token_estimate: int


class BatchProcessor:
    """Utilities for batch processing in the extraction pipeline."""

    @staticmethod
    def create_batches(items: List[T], batch_size: int) -> List[List[T]]:
        """Create batches from a list of items.

        Args:
            items: List of items to batch
            batch_size: Number of items per batch

        Returns:
            List of batches, each containing up to batch_size items

        Example:
            >>> BatchProcessor.create_batches([1, 2, 3, 4, 5], 2)
            [[1, 2], [3, 4], [5]]
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]

        LOGGER.debug(
            f"Created {len(batches)} batches from {len(items)} items "
            f"(batch_size={batch_size})"
        )
        return batches

    @staticmethod
    def split_sheet_rows(sheet: PreparedSheet, max_tokens: int) -> List[RowChunk]:
        """Split a sheet into header-repeating row chunks under a token budget.

        Chunks are contiguous and never overlap; together they cover every
        data row exactly once. A single row larger than the budget becomes a
        chunk of its own.

        Args:
            sheet: Prepared sheet whose first content line is the header
            max_tokens: Token budget per chunk, header included

        Returns:
            List of RowChunk in row order

        Example:
            >>> chunks = BatchProcessor.split_sheet_rows(sheet, 2000)
            >>> [(c.start_row, c.end_row) for c in chunks]
            [(1, 40), (41, 80), (81, 97)]
        """
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")

        header = sheet.header
        rows = sheet.data_rows
        header_tokens = estimate_text_tokens(header + "\n")

        chunks: List[RowChunk] = []
        current: List[str] = []
        current_tokens = header_tokens
        start = 1

        for index, row in enumerate(rows, start=1):
            row_tokens = estimate_text_tokens(row + "\n")
            if current and current_tokens + row_tokens > max_tokens:
                chunks.append(BatchProcessor._make_chunk(header, current, start, index - 1))
                current = []
                current_tokens = header_tokens
                start = index
            current.append(row)
            current_tokens += row_tokens

        if current:
            chunks.append(BatchProcessor._make_chunk(header, current, start, len(rows)))

        LOGGER.debug(
            f"Split sheet '{sheet.name}' ({len(rows)} rows) into {len(chunks)} chunks "
            f"(max_tokens={max_tokens})"
        )
        return chunks

    @staticmethod
    def generate_batch_id(*parts: object) -> str:
        """Generate a short deterministic id from the batch's source parts.

        Example:
            >>> BatchProcessor.generate_batch_id("doc1", "Menu", 1, 40)
            'b_3f2a...'
        """
        digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
        return f"b_{digest[:12]}"

    @staticmethod
    def _make_chunk(header: str, rows: List[str], start: int, end: int) -> RowChunk:
        content = "\n".join([header] + rows)
        return RowChunk(
            content=content,
            start_row=start,
            end_row=end,
            token_estimate=estimate_text_tokens(content),
        )
