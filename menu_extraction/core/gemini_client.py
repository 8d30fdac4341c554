import asyncio
import io
from dataclasses import dataclass
from typing import Dict, List, Optional

from google import genai
from google.genai import types

from menu_extraction.config.settings import ExtractionSettings
from menu_extraction.core.exceptions import APIClientError, APITimeoutError, ConfigurationError, UploadError
from menu_extraction.models.menu_models import ModelTier
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class Attachment:
    """Content attached to a prompt: either an uploaded file URI or inline bytes."""

    mime_type: str
    uri: Optional[str] = None
    data: Optional[bytes] = None

    def to_part(self) -> types.Part:
        if self.uri:
            return types.Part.from_uri(file_uri=self.uri, mime_type=self.mime_type)
        if self.data is not None:
            return types.Part.from_bytes(data=self.data, mime_type=self.mime_type)
        raise ValueError("Attachment needs either a uri or inline data")


@dataclass
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


@dataclass
class UploadedFile:
    uri: str
    mime_type: str
    name: str = ""


class GeminiClient:
    """Wrapper for the Google Gemini API client.

    Exposes the two operations the pipeline needs: content generation on a
    model tier and file upload to the Files API.
    """

    def __init__(
        self,
        api_key: str,
        models: Dict[ModelTier, str],
        timeout: float = 120.0,
        max_retries: int = 1,
        client: Optional[genai.Client] = None,
    ):
        """Initialize Gemini client.

        Args:
            api_key: Gemini API key
            models: Model name for each tier
            timeout: Per-call timeout in seconds
            max_retries: Attempts per call (1 disables retries)
            client: Pre-built SDK client, mainly for tests
        """
        self.models = models
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

        if client is not None:
            self.client = client
            return

        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required to call the Gemini API")
        try:
            self.client = genai.Client(api_key=api_key)
            LOGGER.info(f"Initialized Gemini client with models {', '.join(models.values())}")
        except Exception as e:
            LOGGER.error(f"Failed to initialize Gemini client: {e}")
            raise APIClientError(f"Failed to initialize Gemini client: {e}", original_error=e)

    @classmethod
    def from_settings(cls, settings: ExtractionSettings) -> "GeminiClient":
        return cls(
            api_key=settings.gemini_api_key,
            models={
                ModelTier.PRO: settings.pro_model,
                ModelTier.FLASH: settings.flash_model,
                ModelTier.FLASH_LITE: settings.flash_lite_model,
            },
            timeout=settings.call_timeout_seconds,
            max_retries=settings.max_retries,
        )

    async def generate(
        self,
        prompt: str,
        attachments: Optional[List[Attachment]] = None,
        tier: ModelTier = ModelTier.FLASH,
        system_instruction: Optional[str] = None,
        temperature: float = 0.1,
        max_output_tokens: int = 8000,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Generate content on the given model tier.

        Args:
            prompt: User prompt text
            attachments: Uploaded file references or inline payloads
            tier: Model tier to use
            system_instruction: Optional system instruction
            temperature: Sampling temperature
            max_output_tokens: Output token ceiling
            timeout: Per-call timeout override in seconds

        Returns:
            GenerationResult with the response text and token usage

        Raises:
            APITimeoutError: If the call exceeds the timeout
            APIClientError: If generation fails
        """
        model = self.models[tier]
        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            system_instruction=system_instruction or None,
        )

        parts = [attachment.to_part() for attachment in attachments or []]
        parts.append(types.Part.from_text(text=prompt))
        contents = [types.Content(role="user", parts=parts)]
        call_timeout = timeout or self.timeout

        for attempt in range(self.max_retries):
            try:
                response = await asyncio.wait_for(
                    self.client.aio.models.generate_content(
                        model=model,
                        contents=contents,
                        config=config,
                    ),
                    timeout=call_timeout,
                )
                usage = response.usage_metadata
                text = response.text or ""
                if not text:
                    LOGGER.warning(f"Empty response from {model}")
                return GenerationResult(
                    text=text,
                    input_tokens=(usage.prompt_token_count or 0) if usage else 0,
                    output_tokens=(usage.candidates_token_count or 0) if usage else 0,
                    model=model,
                )

            except asyncio.TimeoutError as e:
                LOGGER.warning(f"Gemini call to {model} timed out after {call_timeout}s")
                if attempt >= self.max_retries - 1:
                    raise APITimeoutError(f"Gemini call to {model} timed out", original_error=e)

            except Exception as e:
                LOGGER.warning(
                    f"Gemini API error (Attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt >= self.max_retries - 1:
                    raise APIClientError(f"Gemini generation failed: {e}", original_error=e)

            await asyncio.sleep(2 ** attempt)

        raise APIClientError("Gemini generation failed")

    async def upload(self, data: bytes, mime_type: str, display_name: Optional[str] = None) -> UploadedFile:
        """Upload bytes to the Files API.

        Raises:
            UploadError: If the upload fails
        """
        try:
            uploaded = await self.client.aio.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except Exception as e:
            raise UploadError(f"File upload failed for {display_name or 'document'}: {e}", original_error=e)

        return UploadedFile(
            uri=uploaded.uri,
            mime_type=uploaded.mime_type or mime_type,
            name=uploaded.name or "",
        )
