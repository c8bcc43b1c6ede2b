"""Document extraction pipeline: bytes -> text/image -> provider -> ParsingResult."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from docflow.core.config import get_settings
from docflow.core.errors import (
    NormalizationError,
    NotFoundError,
    ProviderError,
    TextExtractionError,
)
from docflow.core.image_processing import is_image
from docflow.core.storage import ObjectStore, get_document_store
from docflow.models.document import Document, Template as TemplateRecord
from docflow.services.ai.document_extract.adapter import ExtractionAdapter
from docflow.services.ai.document_extract.contracts import ParsingResult, Template
from docflow.services.ai.document_extract.normalizer import normalize
from docflow.services.text_extractor import PdfTextExtractor, detect_mime_type

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ProviderError, NormalizationError)


class DocumentExtractionPipeline:
    """Runs one document through text extraction, the AI adapter, and the normalizer.

    ``max_attempts`` bounds calls to the primary adapter. When they are all
    spent, the optional ``fallback`` adapter gets exactly one attempt.
    """

    def __init__(
        self,
        adapter: ExtractionAdapter,
        store: ObjectStore,
        text_extractor: Optional[PdfTextExtractor] = None,
        *,
        fallback: Optional[ExtractionAdapter] = None,
        max_attempts: int = 1,
        max_document_bytes: Optional[int] = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.text_extractor = text_extractor or PdfTextExtractor()
        self.fallback = fallback
        self.max_attempts = max(1, max_attempts)
        self.max_document_bytes = max_document_bytes

    @classmethod
    def from_settings(cls, store: ObjectStore) -> "DocumentExtractionPipeline":
        settings = get_settings()
        fallback = None
        if settings.ai_fallback_provider:
            fallback = ExtractionAdapter.from_settings(
                settings.ai_fallback_provider,
                settings.ai_fallback_model or None,
            )
        return cls(
            ExtractionAdapter.from_settings(),
            store,
            PdfTextExtractor(),
            fallback=fallback,
            max_attempts=settings.ai_extract_max_retries + 1,
            max_document_bytes=settings.max_document_bytes,
        )

    async def extract_document(self, document: Document, template: Optional[Template] = None) -> ParsingResult:
        if not document.storage_path:
            raise NotFoundError(f"Document {document.id} has no stored file")
        content = await run_in_threadpool(self.store.get, document.storage_path)
        return await self.extract_content(
            content,
            mime_type=document.mime_type,
            filename=document.name or "",
            template=template,
        )

    async def extract_content(
        self,
        content: bytes,
        *,
        mime_type: Optional[str] = None,
        filename: str = "",
        template: Optional[Template] = None,
    ) -> ParsingResult:
        if self.max_document_bytes and len(content) > self.max_document_bytes:
            raise TextExtractionError(
                f"{filename or 'Document'} is {len(content)} bytes, limit is {self.max_document_bytes}"
            )
        mime = detect_mime_type(content, mime_type, filename)
        if is_image(mime):
            inputs = {"image": content, "image_mime_type": mime}
            page_count = 1
        else:
            extracted = await run_in_threadpool(self.text_extractor.extract, content, mime, filename)
            inputs = {"text": extracted.text}
            page_count = extracted.page_count

        try:
            return await self._run(self.adapter, inputs, template, page_count, self.max_attempts)
        except RETRYABLE_ERRORS as exc:
            if self.fallback is None:
                raise
            logger.warning(
                "Primary provider %s failed (%s), trying fallback %s",
                self.adapter.provider_name,
                exc,
                self.fallback.provider_name,
            )
            return await self._run(self.fallback, inputs, template, page_count, 1)

    async def _run(
        self,
        adapter: ExtractionAdapter,
        inputs: dict,
        template: Optional[Template],
        page_count: int,
        attempts: int,
    ) -> ParsingResult:
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            t0 = time.monotonic()
            try:
                raw = await adapter.extract(template=template, **inputs)
                result = normalize(raw, template, page_count=page_count)
            except RETRYABLE_ERRORS as exc:
                logger.warning(
                    "Extraction attempt %d/%d via %s failed: %s",
                    attempt,
                    attempts,
                    adapter.provider_name,
                    exc,
                )
                last_error = exc
                continue

            logger.info(
                "Extraction finished: provider=%s fields=%d confidence=%.2f latency=%.0fms",
                adapter.provider_name,
                len(result.extracted_fields),
                result.confidence,
                (time.monotonic() - t0) * 1000,
            )
            return result

        assert last_error is not None
        raise last_error


def default_pipeline_factory() -> DocumentExtractionPipeline:
    return DocumentExtractionPipeline.from_settings(get_document_store())


def stored_result(document: Document) -> Optional[ParsingResult]:
    """The document's stored extraction, or ``None`` when absent or unreadable."""
    if not document.extraction:
        return None
    try:
        return ParsingResult.model_validate(document.extraction)
    except ValidationError:
        logger.warning("Stored extraction for document %s is unreadable, ignoring", document.id)
        return None


def store_result(document: Document, result: ParsingResult) -> None:
    """Replace the document's stored extraction with *result*."""
    document.extraction = result.model_dump(mode="json")
    document.document_type = result.document_type
    document.confidence = result.confidence
    document.page_count = result.metadata.page_count
    document.processed_at = datetime.now(timezone.utc)
    document.status = "completed"


def load_template(db: Session, template_id, user_id: str) -> Optional[Template]:
    if not template_id:
        return None
    record = (
        db.query(TemplateRecord)
        .filter(TemplateRecord.id == str(template_id), TemplateRecord.user_id == user_id)
        .first()
    )
    return Template.from_record(record) if record is not None else None
