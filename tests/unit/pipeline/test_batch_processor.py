"""Unit tests for BatchProcessor.

Tests item batching and header-preserving row chunking of large sheets.
"""

import pytest

from menu_extraction.models.menu_models import PreparedSheet
from menu_extraction.services.pipeline.batch_processor import BatchProcessor
from menu_extraction.utils.token_estimator import estimate_text_tokens


def _sheet(rows, header="Name,Price"):
    content = "\n".join([header] + rows)
    return PreparedSheet(
        name="Menu",
        content=content,
        row_count=len(rows) + 1,
        token_estimate=estimate_text_tokens(content),
    )


class TestCreateBatches:
    """Fixed-size batching."""

    def test_last_batch_holds_remainder(self):
        assert BatchProcessor.create_batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_empty_input_yields_no_batches(self):
        assert BatchProcessor.create_batches([], 30) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            BatchProcessor.create_batches([1], 0)


class TestSplitSheetRows:
    """Token-bounded row chunking."""

    def test_chunks_are_contiguous_and_cover_every_row(self):
        rows = [f"Item {n},9.99" for n in range(1, 10)]
        sheet = _sheet(rows)

        # Header is 3 tokens and each row is 3 tokens, so three rows fit per chunk
        chunks = BatchProcessor.split_sheet_rows(sheet, max_tokens=12)

        assert [(c.start_row, c.end_row) for c in chunks] == [(1, 3), (4, 6), (7, 9)]
        covered = [row for c in chunks for row in c.content.split("\n")[1:]]
        assert covered == rows

    def test_every_chunk_repeats_the_header(self):
        sheet = _sheet([f"Item {n},9.99" for n in range(1, 10)])

        chunks = BatchProcessor.split_sheet_rows(sheet, max_tokens=12)

        assert all(c.content.split("\n")[0] == "Name,Price" for c in chunks)
        assert all(c.token_estimate <= 12 for c in chunks)

    def test_oversized_row_gets_its_own_chunk(self):
        long_row = "Platter," + "x" * 200
        sheet = _sheet(["Soup,4", long_row, "Salad,6"])

        chunks = BatchProcessor.split_sheet_rows(sheet, max_tokens=20)

        assert [(c.start_row, c.end_row) for c in chunks] == [(1, 1), (2, 2), (3, 3)]
        assert chunks[1].content.endswith(long_row)

    def test_small_sheet_is_single_chunk(self):
        sheet = _sheet(["Soup,4", "Salad,6"])

        chunks = BatchProcessor.split_sheet_rows(sheet, max_tokens=8000)

        assert len(chunks) == 1
        assert chunks[0].content == sheet.content
        assert (chunks[0].start_row, chunks[0].end_row) == (1, 2)

    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValueError):
            BatchProcessor.split_sheet_rows(_sheet(["Soup,4"]), max_tokens=0)


def test_batch_id_is_deterministic():
    first = BatchProcessor.generate_batch_id("doc-1", "Menu", 1, 40)
    second = BatchProcessor.generate_batch_id("doc-1", "Menu", 1, 40)
    other = BatchProcessor.generate_batch_id("doc-1", "Menu", 41, 80)

    assert first == second
    assert first != other
    assert first.startswith("b_")
