"""Extraction adapter: one uniform ``extract`` call over every AI backend."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx
from starlette.concurrency import run_in_threadpool

from docflow.core.config import get_settings
from docflow.core.errors import InvalidRequestError, ProviderError
from docflow.core.image_processing import prepare_vision_image
from docflow.services.ai.common.providers import ProviderRequest, ProviderResult
from docflow.services.ai.common.router import ResolvedConfig, resolve
from docflow.services.ai.document_extract.contracts import Template

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert document parsing AI. You read financial documents and "
    "answer with a single JSON object, never markdown or explanation."
)

RESPONSE_SCHEMA = """Respond with a JSON object of this shape:
{
  "document_type": "invoice | receipt | bank-statement | contract | other",
  "confidence": 0-100,
  "summary": "one line describing the document",
  "extracted_fields": [
    {"name": "field_name", "value": "...", "confidence": 0-100, "type": "text", "position": {"page": 1}}
  ],
  "structured_data": {}
}
Repeated rows (line items, transactions) use indexed names such as
"line_items[0].description" and "line_items[0].amount"."""

TEMPLATE_PROMPT = """Extract structured data from the following document.

DOCUMENT TYPE: {document_type}
TEMPLATE: {template_name}

FIELDS TO EXTRACT:
{field_lines}

DOCUMENT TEXT:
{content}

INSTRUCTIONS:
1. Extract every listed field, in the order given.
2. Give each field a confidence score (0-100).
3. If a field is not found, include it with an empty value and confidence 0.
4. Use ISO dates (YYYY-MM-DD) and plain numbers for amounts.

{schema}"""

DEFAULT_PROMPT = """Extract all relevant structured data from this document.

DOCUMENT TEXT:
{content}

INSTRUCTIONS:
1. Identify the document type (invoice, receipt, bank-statement, contract, ...).
2. Extract names, organizations, dates (YYYY-MM-DD), amounts and currencies,
   addresses, reference numbers, and any line items or transactions.
3. Give each field a confidence score (0-100).
4. If the document contains financial data, prioritize amounts and totals.

{schema}"""

IMAGE_CONTENT = "(the document is attached as an image; read it directly)"


def build_prompt(content: str, template: Optional[Template] = None) -> str:
    if template is None or not template.fields:
        return DEFAULT_PROMPT.format(content=content, schema=RESPONSE_SCHEMA)

    field_lines = "\n".join(
        "- {name} ({type}{required}): {hint}".format(
            name=spec.name,
            type=spec.type,
            required=", required" if spec.required else "",
            hint=spec.extraction_hint or "Extract this field if present",
        )
        for spec in template.fields
    )
    return TEMPLATE_PROMPT.format(
        document_type=template.document_type,
        template_name=template.name or template.id,
        field_lines=field_lines,
        content=content,
        schema=RESPONSE_SCHEMA,
    )


class ExtractionAdapter:
    """Sends one extraction request to the configured provider.

    Every failure of the outbound call (timeout, HTTP error, unexpected
    response shape) surfaces as ``ProviderError``.
    """

    def __init__(
        self,
        config: ResolvedConfig,
        *,
        max_input_chars: int = 20000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.max_input_chars = max_input_chars
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        provider: str | None = None,
        model: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ExtractionAdapter":
        settings = get_settings()
        return cls(
            resolve(provider, model),
            max_input_chars=settings.ai_max_input_chars,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return self.config.spec.name

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def supports_vision(self) -> bool:
        return self.config.spec.supports_vision

    def _build_request(
        self,
        text: Optional[str],
        image: Optional[bytes],
        image_mime_type: Optional[str],
        template: Optional[Template],
    ) -> ProviderRequest:
        if (text is None) == (image is None):
            raise InvalidRequestError("Provide exactly one of document text or image bytes")

        if image is not None:
            if not self.supports_vision:
                raise ProviderError(f"Provider {self.provider_name!r} does not accept image input")
            prepared = prepare_vision_image(image, image_mime_type)
            return ProviderRequest(
                prompt=build_prompt(IMAGE_CONTENT, template),
                model=self.model,
                system_prompt=SYSTEM_PROMPT,
                image=prepared.data,
                image_mime_type=prepared.mime_type,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )

        if not text.strip():
            raise InvalidRequestError("Document text is empty")
        return ProviderRequest(
            prompt=build_prompt(text[: self.max_input_chars], template),
            model=self.model,
            system_prompt=SYSTEM_PROMPT,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )

    async def extract(
        self,
        *,
        text: Optional[str] = None,
        image: Optional[bytes] = None,
        image_mime_type: Optional[str] = None,
        template: Optional[Template] = None,
    ) -> ProviderResult:
        # Image re-encoding is CPU-bound.
        request = await run_in_threadpool(self._build_request, text, image, image_mime_type, template)
        timeout = self.config.timeout_seconds
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                raw_text, prompt_tokens, completion_tokens = await asyncio.wait_for(
                    self.config.spec.generate(request, self.config.api_key, client),
                    timeout=timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise ProviderError(f"{self.provider_name} timed out after {timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"{self.provider_name} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.provider_name} request failed: {exc}") from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(f"{self.provider_name} returned an unexpected response shape") from exc

        latency_ms = round((time.monotonic() - start) * 1000, 2)
        logger.info(
            "AI extraction call: provider=%s model=%s tokens=%d/%d latency=%.0fms",
            self.provider_name,
            self.model,
            prompt_tokens,
            completion_tokens,
            latency_ms,
        )
        return ProviderResult(
            raw_text=raw_text or "",
            model=self.model,
            provider=self.provider_name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
        )
