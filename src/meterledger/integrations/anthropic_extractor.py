"""Anthropic API integration for invoice data extraction using structured outputs."""

import asyncio
import base64
import logging
import time
from pathlib import Path

from anthropic import AsyncAnthropic
from anthropic.types.beta import (
    BetaCacheControlEphemeralParam,
    BetaMessageParam,
    BetaTextBlockParam,
)
from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from meterledger.models import ExtractionResult, InvoiceData, RawExtraction

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})
SUPPORTED_MIME_TYPES = frozenset({PDF_MIME_TYPE, "image/jpg"} | IMAGE_MIME_TYPES)


class ExtractionError(Exception):
    """Base exception for extraction errors."""


class ExtractionRefusedError(ExtractionError):
    """Raised when the model refuses to process the request."""


class ExtractionIncompleteError(ExtractionError):
    """Raised when the response is truncated due to token limits."""


class ExtractionTimeoutError(ExtractionError):
    """Raised when a document is not extracted before its deadline."""


class UnsupportedDocumentError(ExtractionError):
    """Raised for files the model cannot read."""


def _document_block(content: bytes, mime_type: str) -> dict:
    """Build the content block carrying the document itself."""
    if mime_type == "image/jpg":
        mime_type = "image/jpeg"

    data = base64.standard_b64encode(content).decode("ascii")
    if mime_type == PDF_MIME_TYPE:
        return {
            "type": "document",
            "source": {"type": "base64", "media_type": mime_type, "data": data},
        }
    if mime_type in IMAGE_MIME_TYPES:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": mime_type, "data": data},
        }
    raise UnsupportedDocumentError(f"Unsupported document type: {mime_type}")


# Anything else (network, rate limits, overload) is worth another attempt.
# Cancellation must pass straight through so deadlines hold across retries.
_NON_RETRYABLE = (
    asyncio.CancelledError,
    ExtractionRefusedError,
    ExtractionIncompleteError,
    ExtractionTimeoutError,
    UnsupportedDocumentError,
)


class InvoiceExtractor:
    """
    Anthropic-powered invoice data extractor using structured outputs.

    The PDF or image is sent to Claude directly and the reply is validated
    against the InvoiceData Pydantic model.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5",
        max_tokens: int = 2048,
        temperature: float = 0.0,
        prompts_dir: str | None = None,
    ) -> None:
        """
        Initialize the Anthropic extractor.

        Args:
            api_key: Anthropic API key
            model: Model to use (default: claude-haiku-4-5)
            max_tokens: Maximum tokens for response (default: 2048)
            temperature: Sampling temperature (default: 0.0 for deterministic)
            prompts_dir: Directory containing Jinja2 templates
                (default: the prompts/ directory shipped with the package)
        """
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        if prompts_dir is None:
            prompts_dir = str(Path(__file__).parent.parent / "prompts")

        self.jinja_env = Environment(
            loader=FileSystemLoader(prompts_dir),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _render_prompts(self, site_name: str | None = None) -> tuple[str, str]:
        """
        Render system and user prompts from Jinja2 templates.

        Args:
            site_name: Optional school/site the document is believed to belong to

        Returns:
            Tuple of (system_prompt, user_prompt)
        """
        system_template = self.jinja_env.get_template("extractor_system.jinja2")
        user_template = self.jinja_env.get_template("extractor_user.jinja2")

        system_prompt = system_template.render()
        user_prompt = user_template.render(SITE_NAME=site_name)

        return system_prompt, user_prompt

    @retry(
        retry=retry_if_not_exception_type(_NON_RETRYABLE),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _parse(
        self, content: bytes, mime_type: str, site_name: str | None, max_tokens: int
    ):
        system_prompt, user_prompt = self._render_prompts(site_name)

        messages: list[BetaMessageParam] = [
            {
                "role": "user",
                "content": [
                    _document_block(content, mime_type),  # type: ignore[list-item]
                    {"type": "text", "text": user_prompt},
                ],
            }
        ]

        response = await self.client.beta.messages.parse(
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
            betas=["structured-outputs-2025-11-13"],
            system=[
                BetaTextBlockParam(
                    type="text",
                    text=system_prompt,
                    cache_control=BetaCacheControlEphemeralParam(type="ephemeral"),
                )
            ],
            messages=messages,
            output_format=InvoiceData,
        )

        if response.stop_reason == "refusal":
            raise ExtractionRefusedError("Model refused to process the request")

        if response.stop_reason == "max_tokens":
            raise ExtractionIncompleteError(
                "Response truncated due to token limit. Try increasing max_tokens."
            )

        return response

    async def extract_invoice(
        self,
        content: bytes,
        mime_type: str,
        *,
        site_name: str | None = None,
        file_id: str = "",
        file_name: str = "",
        timeout: float | None = None,
        max_tokens: int | None = None,
    ) -> ExtractionResult:
        """
        Extract structured billing data from an invoice or credit note.

        Args:
            content: Raw bytes of the PDF or image
            mime_type: MIME type of ``content``
            site_name: Optional site hint, rendered into the prompt
            file_id: Identity of the source file, copied onto the extraction
            file_name: Display name of the source file
            timeout: Deadline in seconds for the whole call, retries included
            max_tokens: Override default max_tokens if specified

        Returns:
            ExtractionResult containing the RawExtraction and usage metadata

        Raises:
            UnsupportedDocumentError: If the mime type cannot be sent to the model
            ExtractionRefusedError: If the model refuses the request
            ExtractionIncompleteError: If response is truncated
            ExtractionTimeoutError: If the deadline passes
            Exception: For other API errors (after retries)
        """
        if mime_type not in SUPPORTED_MIME_TYPES:
            raise UnsupportedDocumentError(f"Unsupported document type: {mime_type}")

        start_time = time.time()
        call = self._parse(content, mime_type, site_name, max_tokens or self.max_tokens)

        try:
            if timeout is None:
                response = await call
            else:
                response = await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as e:
            raise ExtractionTimeoutError(
                f"Extraction did not complete within {timeout:g}s"
            ) from e

        invoice: InvoiceData = response.parsed_output  # type: ignore
        extraction = RawExtraction(
            **invoice.model_dump(),
            source_file_id=file_id,
            source_file_name=file_name,
        )

        processing_time = time.time() - start_time
        logger.debug(
            "Extracted %s in %.2fs (%d input tokens)",
            file_name or file_id,
            processing_time,
            response.usage.input_tokens,
        )

        return ExtractionResult(
            extraction=extraction,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            cache_creation_input_tokens=response.usage.cache_creation_input_tokens or 0,
            cache_read_input_tokens=response.usage.cache_read_input_tokens or 0,
            processing_time=processing_time,
        )
