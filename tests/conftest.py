"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Callable, List, Optional, Union

import pytest

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.core.exceptions import UploadError
from menu_extraction.core.gemini_client import GenerationResult, UploadedFile
from menu_extraction.core.rate_limiter import create_rate_limiters
from menu_extraction.models.menu_models import (
    DocumentKind,
    ModelTier,
    PreparedDocument,
    PreparedPage,
    PreparedSheet,
)
from menu_extraction.services.cost_tracker import TokenCostTracker
from menu_extraction.services.upload_cache import ContentUploadCache
from menu_extraction.services.vocabulary import VocabularyProvider
from menu_extraction.utils.token_estimator import estimate_text_tokens

Reply = Union[str, GenerationResult, Exception]


class FakeGeminiClient:
    """In-memory stand-in for GeminiClient.

    Replies come from ``responder(prompt, tier, attachments)`` when given,
    otherwise from the ``replies`` queue in call order. An Exception reply
    is raised instead of returned.
    """

    def __init__(
        self,
        replies: Optional[List[Reply]] = None,
        responder: Optional[Callable[..., Reply]] = None,
        input_tokens: int = 1000,
        output_tokens: int = 200,
    ):
        self.replies = list(replies or [])
        self.responder = responder
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[dict] = []
        self.uploads: List[dict] = []
        self.fail_uploads = False

    async def generate(self, prompt, attachments=None, tier=ModelTier.FLASH, **kwargs) -> GenerationResult:
        self.calls.append({"prompt": prompt, "attachments": attachments or [], "tier": tier, **kwargs})
        if self.responder is not None:
            reply = self.responder(prompt, tier, attachments or [])
        elif self.replies:
            reply = self.replies.pop(0)
        else:
            reply = "[]"

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, GenerationResult):
            return reply
        return GenerationResult(
            text=reply,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=tier.value,
        )

    async def upload(self, data, mime_type, display_name=None) -> UploadedFile:
        if self.fail_uploads:
            raise UploadError(f"upload rejected for {display_name}")
        self.uploads.append({"data": data, "mime_type": mime_type, "display_name": display_name})
        return UploadedFile(uri=f"https://files.example/{len(self.uploads)}", mime_type=mime_type)

    def calls_for(self, tier: ModelTier) -> List[dict]:
        return [call for call in self.calls if call["tier"] == tier]


class HangingUploadClient(FakeGeminiClient):
    """Fake client whose uploads never finish on their own."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.cancelled_uploads = 0

    async def upload(self, data, mime_type, display_name=None) -> UploadedFile:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled_uploads += 1
            raise
        return await super().upload(data, mime_type, display_name=display_name)


def make_text_pdf(doc_id: str = "pdf-1", text: str = "Burger 12.99\nFries 4.50", pages: int = 1) -> PreparedDocument:
    return PreparedDocument(
        id=doc_id,
        name=f"{doc_id}.pdf",
        kind=DocumentKind.PDF,
        mime_type="application/pdf",
        pages=[
            PreparedPage(page_number=n, content=text, token_estimate=estimate_text_tokens(text))
            for n in range(1, pages + 1)
        ],
        raw_bytes=b"%PDF-1.4 test",
    )


def make_spreadsheet(doc_id: str = "sheet-1", sheets: Optional[dict] = None) -> PreparedDocument:
    sheets = sheets or {"Menu": "Name,Price\nBurger,12.99\nFries,4.50"}
    return PreparedDocument(
        id=doc_id,
        name=f"{doc_id}.xlsx",
        kind=DocumentKind.SPREADSHEET,
        mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        sheets=[
            PreparedSheet(
                name=name,
                content=content,
                row_count=len(content.split("\n")),
                token_estimate=estimate_text_tokens(content),
            )
            for name, content in sheets.items()
        ],
        raw_bytes=b"PK\x03\x04",
    )


def make_image(doc_id: str = "img-1") -> PreparedDocument:
    return PreparedDocument(
        id=doc_id,
        name=f"{doc_id}.png",
        kind=DocumentKind.IMAGE,
        mime_type="image/png",
        content="iVBORw0KGgo=",
        raw_bytes=b"\x89PNG\r\n\x1a\n",
        metadata={"total_tokens": 1000},
    )


@pytest.fixture
def settings() -> ExtractionSettings:
    """Settings with test credentials and no artificial waiting.

    Returns:
        ExtractionSettings: Settings for unit tests
    """
    return ExtractionSettings(
        gemini_api_key="test-key",
        pro_requests_per_minute=600000,
        flash_requests_per_minute=600000,
        flash_lite_requests_per_minute=600000,
        upload_wave_pause_seconds=0,
        call_timeout_seconds=5,
    )


@pytest.fixture
def vocabulary() -> VocabularyProvider:
    return VocabularyProvider()


@pytest.fixture
def tracker() -> TokenCostTracker:
    return TokenCostTracker()


@pytest.fixture
def fake_client() -> FakeGeminiClient:
    return FakeGeminiClient()


@pytest.fixture
def rate_limiters(settings):
    return create_rate_limiters(settings)


@pytest.fixture
def upload_cache(fake_client, settings) -> ContentUploadCache:
    return ContentUploadCache(fake_client, concurrency=settings.upload_concurrency, wave_pause_seconds=0)
