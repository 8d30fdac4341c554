"""Tests for the Gemini client wrapper with a mocked SDK client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from menu_extraction.core.exceptions import APIClientError, APITimeoutError, ConfigurationError, UploadError
from menu_extraction.core.gemini_client import Attachment, GeminiClient
from menu_extraction.models.menu_models import ModelTier

MODELS = {
    ModelTier.PRO: "gemini-2.5-pro",
    ModelTier.FLASH: "gemini-2.5-flash",
    ModelTier.FLASH_LITE: "gemini-2.5-flash-lite",
}


def _sdk_response(text="[]", prompt_tokens=120, output_tokens=30):
    response = MagicMock()
    response.text = text
    response.usage_metadata.prompt_token_count = prompt_tokens
    response.usage_metadata.candidates_token_count = output_tokens
    return response


@pytest.fixture
def sdk_client():
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(return_value=_sdk_response('[{"name": "Soup"}]'))
    client.aio.files.upload = AsyncMock()
    return client


def test_requires_api_key_without_injected_client():
    with pytest.raises(ConfigurationError):
        GeminiClient(api_key="", models=MODELS)


@pytest.mark.asyncio
async def test_generate_returns_text_and_usage(sdk_client):
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client)

    result = await client.generate("Extract items", tier=ModelTier.PRO, system_instruction="Be precise")

    assert result.text == '[{"name": "Soup"}]'
    assert result.input_tokens == 120
    assert result.output_tokens == 30
    assert result.model == "gemini-2.5-pro"
    kwargs = sdk_client.aio.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "gemini-2.5-pro"
    assert kwargs["config"].system_instruction == "Be precise"


@pytest.mark.asyncio
async def test_generate_attaches_files_before_prompt(sdk_client):
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client)

    await client.generate(
        "Extract items",
        attachments=[
            Attachment(mime_type="application/pdf", uri="https://files.example/1"),
            Attachment(mime_type="image/png", data=b"\x89PNG"),
        ],
    )

    contents = sdk_client.aio.models.generate_content.call_args.kwargs["contents"]
    parts = contents[0].parts
    assert len(parts) == 3
    assert parts[0].file_data.file_uri == "https://files.example/1"
    assert parts[1].inline_data.mime_type == "image/png"
    assert parts[2].text == "Extract items"


@pytest.mark.asyncio
async def test_generate_handles_missing_usage_metadata(sdk_client):
    response = _sdk_response("[]")
    response.usage_metadata = None
    sdk_client.aio.models.generate_content = AsyncMock(return_value=response)
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client)

    result = await client.generate("prompt")

    assert result.input_tokens == 0
    assert result.output_tokens == 0


@pytest.mark.asyncio
async def test_generate_wraps_sdk_errors(sdk_client):
    sdk_client.aio.models.generate_content = AsyncMock(side_effect=RuntimeError("quota exceeded"))
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client, max_retries=1)

    with pytest.raises(APIClientError) as exc_info:
        await client.generate("prompt")

    assert isinstance(exc_info.value.original_error, RuntimeError)
    assert sdk_client.aio.models.generate_content.await_count == 1


@pytest.mark.asyncio
async def test_generate_times_out(sdk_client):
    async def slow(**kwargs):
        await asyncio.sleep(1)
        return _sdk_response()

    sdk_client.aio.models.generate_content = slow
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client, timeout=0.01)

    with pytest.raises(APITimeoutError):
        await client.generate("prompt")


@pytest.mark.asyncio
async def test_upload_returns_remote_reference(sdk_client):
    uploaded = MagicMock()
    uploaded.uri = "https://files.example/abc"
    uploaded.mime_type = "application/pdf"
    uploaded.name = "files/abc"
    sdk_client.aio.files.upload = AsyncMock(return_value=uploaded)
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client)

    result = await client.upload(b"%PDF", "application/pdf", display_name="menu.pdf")

    assert result.uri == "https://files.example/abc"
    assert result.mime_type == "application/pdf"
    assert sdk_client.aio.files.upload.call_args.kwargs["config"].display_name == "menu.pdf"


@pytest.mark.asyncio
async def test_upload_failure_raises_upload_error(sdk_client):
    sdk_client.aio.files.upload = AsyncMock(side_effect=RuntimeError("413 too large"))
    client = GeminiClient(api_key="", models=MODELS, client=sdk_client)

    with pytest.raises(UploadError):
        await client.upload(b"data", "text/csv")
