"""Tests for the MenuExtractionService orchestrator with a fake model client."""

import asyncio
import base64
import json

import pytest

from conftest import FakeGeminiClient, HangingUploadClient
from menu_extraction.core.exceptions import APIClientError
from menu_extraction.models.menu_models import DocumentMeta, ModelTier
from menu_extraction.services.extraction_service import (
    MenuExtractionService,
    estimate_extraction_cost,
    validate_documents,
)
from menu_extraction.services.pipeline.document_preparer import DocumentPreparer

CSV_MENU = b"Name,Description,Price\nBurger,Beef patty with cheese,12.99\nFries,,4.50\nMilkshake,Vanilla or chocolate,6\n"


def _csv_document(doc_id="lunch", data=CSV_MENU):
    return DocumentMeta(
        id=doc_id,
        name=f"{doc_id}.csv",
        mime_type="text/csv",
        content=base64.b64encode(data).decode("ascii"),
    )


def _menu_responder(prompt, tier, attachments):
    if "DOCUMENT REFERENCE INFO" in prompt:
        return json.dumps({
            "sections": [
                {"name": "Mains", "documentLocations": [{"documentId": "lunch", "sheetNames": ["lunch"]}],
                 "estimatedItems": 3, "confidence": 0.9},
            ],
            "overallConfidence": 0.9,
        })
    if "Items (referenced by id)" in prompt:
        return json.dumps([
            {"id": "0", "sizes": [{"size": "Regular", "price": "12.99", "isDefault": True}],
             "modifierGroups": [{"name": "Add Protein", "options": ["Bacon (+$2)"]}]},
            {"id": "1", "sizes": [{"size": "Small", "price": "4.50", "isDefault": True},
                                  {"size": "Large", "price": "6.50"}]},
            {"id": "2", "sizes": []},
        ])
    return json.dumps([
        {"name": "Burger", "description": "Beef patty with cheese", "price": "12.99", "category": "Burgers"},
        {"name": "Fries", "price": "4.50", "category": "Sides"},
        {"name": "Milkshake", "description": "Vanilla or chocolate", "price": "6", "category": "Desserts"},
    ])


class SlowGeminiClient(FakeGeminiClient):
    """Fake client whose calls outlast the run timeout."""

    async def generate(self, prompt, attachments=None, tier=ModelTier.FLASH, **kwargs):
        await asyncio.sleep(5)
        return await super().generate(prompt, attachments=attachments, tier=tier, **kwargs)


class TestInputValidation:
    """Malformed input is rejected before any model call."""

    def test_empty_document_list(self):
        assert validate_documents([]) == ["No documents provided"]

    def test_reports_every_problem(self):
        documents = [
            DocumentMeta(name="menu.docx", mime_type="application/msword", content="ZGF0YQ=="),
            DocumentMeta(id="d2", name="menu.pdf"),
        ]

        errors = validate_documents(documents)

        assert errors == [
            "Document #1: missing id",
            "Document #1: unsupported mime type application/msword",
            "Document d2: missing mime type",
            "Document d2: missing both content and url",
        ]

    @pytest.mark.asyncio
    async def test_invalid_input_fails_without_calls(self, settings):
        client = FakeGeminiClient()
        service = MenuExtractionService(settings=settings, client=client)

        result = await service.extract_menu([DocumentMeta(id="d1", name="menu.pdf", mime_type="application/pdf")])

        assert result.success is False
        assert result.errors == ["Document d1: missing both content and url"]
        assert result.costs.total == 0
        assert client.calls == []


class TestExtractMenu:
    """Full runs through all phases."""

    @pytest.mark.asyncio
    async def test_successful_run(self, settings):
        client = FakeGeminiClient(responder=_menu_responder)
        service = MenuExtractionService(settings=settings, client=client)

        result = await service.extract_menu([_csv_document()])

        assert result.success is True
        assert [section.name for section in result.structure.sections] == ["Mains"]
        assert [item.name for item in result.items] == ["Burger", "Fries", "Milkshake"]
        for item in result.items:
            assert item.section == "Mains"
            assert item.source_info.sheet == "lunch"
            assert sum(size.is_default for size in item.sizes) == 1
        assert result.items[0].modifier_groups[0].name == "Add Protein"
        assert [size.size for size in result.items[1].sizes] == ["Small", "Large"]
        assert [(s.size, s.price) for s in result.items[2].sizes] == [("N/A", "6")]

        costs = result.costs
        assert costs.phase1.calls == 1
        assert costs.phase2.calls == 1
        assert costs.phase3.calls == 1
        assert costs.total == pytest.approx(costs.phase1.cost + costs.phase2.cost + costs.phase3.cost)
        assert set(result.validation) == {"structure", "extraction", "enrichment", "coverage"}
        assert "Starting extraction run" in result.logs
        assert "[phase 1]" in result.logs
        assert result.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_structure_failure_returns_partial_costs(self, settings):
        client = FakeGeminiClient(replies=["The document does not look like a menu."])
        service = MenuExtractionService(settings=settings, client=client)

        result = await service.extract_menu([_csv_document()])

        assert result.success is False
        assert "structure" in result.error.lower()
        assert result.items is None
        assert result.costs.phase1.calls == 1
        assert result.costs.total > 0
        assert result.costs.total == pytest.approx(
            result.costs.phase1.cost + result.costs.phase2.cost + result.costs.phase3.cost
        )
        assert result.logs

    @pytest.mark.asyncio
    async def test_structure_call_error_fails_run(self, settings):
        client = FakeGeminiClient(replies=[APIClientError("quota exceeded")])
        service = MenuExtractionService(settings=settings, client=client)

        result = await service.extract_menu([_csv_document()])

        assert result.success is False
        assert "quota exceeded" in result.error
        assert result.costs.total == 0

    @pytest.mark.asyncio
    async def test_unpreparable_documents_fail_run(self, settings):
        client = FakeGeminiClient()
        service = MenuExtractionService(settings=settings, client=client)

        result = await service.extract_menu([_csv_document(data=b",,\n,,\n")])

        assert result.success is False
        assert "prepared" in result.error
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_run_timeout(self, settings):
        settings = settings.model_copy(update={"run_timeout_seconds": 0.05})
        service = MenuExtractionService(settings=settings, client=SlowGeminiClient())

        result = await service.extract_menu([_csv_document()])

        assert result.success is False
        assert "timed out" in result.error
        assert result.costs.total == 0

    @pytest.mark.asyncio
    async def test_run_timeout_cancels_pending_uploads(self, settings):
        settings = settings.model_copy(update={"run_timeout_seconds": 0.05})
        client = HangingUploadClient()
        service = MenuExtractionService(settings=settings, client=client)

        result = await service.extract_menu([_csv_document()])

        assert result.success is False
        assert "timed out" in result.error
        assert client.cancelled_uploads == 1
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_runs_do_not_share_logs(self, settings):
        first = MenuExtractionService(settings=settings, client=FakeGeminiClient(responder=_menu_responder))
        second = MenuExtractionService(settings=settings, client=FakeGeminiClient(replies=[APIClientError("down")]))

        ok, failed = await asyncio.gather(
            first.extract_menu([_csv_document()]),
            second.extract_menu([_csv_document("dinner")]),
        )

        assert ok.success is True
        assert failed.success is False
        assert "down" not in ok.logs
        assert "Extraction complete" not in failed.logs


@pytest.mark.asyncio
async def test_cost_estimate_grows_with_content(settings):
    preparer = DocumentPreparer(settings)
    small = await preparer.prepare_document(_csv_document())
    large = await preparer.prepare_document(_csv_document("big", data=CSV_MENU * 50))

    small_estimate = estimate_extraction_cost([small])

    assert small_estimate > 0
    assert estimate_extraction_cost([large]) > small_estimate
    assert estimate_extraction_cost([]) == 0
