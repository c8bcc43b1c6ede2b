"""Export jobs: creation, the pending -> processing -> completed/failed run, downloads.

``ExportService.run`` never leaves a job in ``processing``: whatever goes
wrong while collecting, formatting or storing, the job ends ``failed`` with
an ``error_message``. Expiry is not a stored transition; every reader goes
through ``effective_status``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import and_, not_, or_, update
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from docflow.core.config import get_settings
from docflow.core.errors import (
    DocflowError,
    ExpiredError,
    InvalidRequestError,
    NoDataError,
    NotFoundError,
    NotReadyError,
    ProviderError,
)
from docflow.core.storage import ObjectStore, build_export_path
from docflow.models.document import Document, ExportJob
from docflow.services.ai.document_extract.contracts import ParsingResult
from docflow.services.ai.document_extract.service import (
    DocumentExtractionPipeline,
    load_template,
    store_result,
    stored_result,
)
from docflow.services.export_formatter import (
    EXTENSIONS,
    MIME_TYPES,
    DataFormatter,
    ExportRecord,
    slugify_name,
)

logger = logging.getLogger(__name__)

EXPORT_TYPES = ("document_export", "template_export", "bulk_export")
EXPORT_FORMATS = ("json", "csv", "excel")
EXPORT_STATUSES = ("pending", "processing", "completed", "failed", "expired")
TEXT_FORMATS = ("json", "csv", "structured")

PipelineFactory = Callable[[], DocumentExtractionPipeline]


def _now_utc() -> datetime:
    # SQLite (used in CI/tests) stores timezone-aware datetimes as naive values.
    settings = get_settings()
    if (settings.database_url or "").startswith("sqlite"):
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def effective_status(job: ExportJob, now: Optional[datetime] = None) -> str:
    """Stored status, except a completed job past ``expires_at`` reads as ``expired``."""
    if job.status == "completed" and job.expires_at is not None:
        if _as_utc(now or _now_utc()) > _as_utc(job.expires_at):
            return "expired"
    return job.status


def normalize_id(value: Any) -> str:
    text = str(value).strip()
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text


# --- source filters ---------------------------------------------------------


@dataclass(frozen=True)
class SourceFilters:
    document_id: Optional[str] = None
    template_id: Optional[str] = None
    document_type: Optional[str] = None
    status: Optional[str] = None
    confidence_threshold: Optional[float] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


def _parse_date(value: Any, *, end_of_day: bool = False) -> Optional[datetime]:
    if value in (None, ""):
        return None
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid date filter: {text!r}") from exc
    if end_of_day and len(text) == 10:
        parsed += timedelta(days=1)
    return parsed


def parse_filters(raw: Optional[dict]) -> SourceFilters:
    """Read snake_case or camelCase filter keys; bad values are request errors."""
    raw = dict(raw or {})
    date_range = raw.get("date_range") or raw.get("dateRange") or {}
    if not isinstance(date_range, dict):
        raise InvalidRequestError("date_range must be an object")

    threshold = raw.get("confidence_threshold", raw.get("confidenceThreshold"))
    if threshold not in (None, ""):
        try:
            threshold = float(threshold)
        except (TypeError, ValueError) as exc:
            raise InvalidRequestError("confidence_threshold must be a number") from exc
        if not 0 <= threshold <= 100:
            raise InvalidRequestError("confidence_threshold must be between 0 and 100")
    else:
        threshold = None

    def text(*keys: str) -> Optional[str]:
        for key in keys:
            value = raw.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    return SourceFilters(
        document_id=text("document_id", "documentId"),
        template_id=text("template_id", "templateId"),
        document_type=text("document_type", "documentType"),
        status=text("status"),
        confidence_threshold=threshold,
        date_from=_parse_date(raw.get("date_from") or raw.get("dateFrom") or date_range.get("start")),
        date_to=_parse_date(
            raw.get("date_to") or raw.get("dateTo") or date_range.get("end"),
            end_of_day=True,
        ),
    )


# --- downloads --------------------------------------------------------------


@dataclass(frozen=True)
class DownloadedExport:
    data: bytes
    filename: str
    mime_type: str
    format: str


def download_filename(job: ExportJob) -> str:
    return f"{slugify_name(job.name)}.{EXTENSIONS.get(job.format, 'bin')}"


class ExportService:
    """Owns the export job state machine for one database session."""

    def __init__(
        self,
        db: Session,
        export_store: ObjectStore,
        *,
        pipeline_factory: Optional[PipelineFactory] = None,
        formatter: Optional[DataFormatter] = None,
        expiry_hours: Optional[int] = None,
    ) -> None:
        self.db = db
        self.export_store = export_store
        self.formatter = formatter or DataFormatter()
        self._pipeline_factory = pipeline_factory
        self._pipeline: Optional[DocumentExtractionPipeline] = None
        self.expiry_hours = expiry_hours or get_settings().export_expiry_hours

    # --- queries ---

    def get_job(self, job_id, user_id: str) -> ExportJob:
        job = (
            self.db.query(ExportJob)
            .filter(ExportJob.id == normalize_id(job_id), ExportJob.user_id == user_id)
            .first()
        )
        if job is None:
            raise NotFoundError("Export not found")
        return job

    def list_jobs(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        type: Optional[str] = None,
        format: Optional[str] = None,
    ) -> tuple[list[ExportJob], int]:
        query = self.db.query(ExportJob).filter(ExportJob.user_id == user_id)
        now = _now_utc()
        if status:
            is_expired = and_(ExportJob.status == "completed", ExportJob.expires_at < now)
            if status == "expired":
                query = query.filter(or_(ExportJob.status == "expired", is_expired))
            elif status == "completed":
                query = query.filter(ExportJob.status == "completed", not_(is_expired))
            else:
                query = query.filter(ExportJob.status == status)
        if type:
            query = query.filter(ExportJob.type == type)
        if format:
            query = query.filter(ExportJob.format == format)

        total = query.count()
        jobs = (
            query.order_by(ExportJob.created_at.desc(), ExportJob.id)
            .offset((max(1, page) - 1) * limit)
            .limit(limit)
            .all()
        )
        return jobs, total

    # --- create / run ---

    def create_job(
        self,
        user_id: str,
        *,
        name: str,
        type: str = "document_export",
        format: str = "json",
        description: Optional[str] = None,
        filters: Optional[dict] = None,
        include_fields: Optional[list[str]] = None,
        settings: Optional[dict] = None,
        document_ids: Optional[list[str]] = None,
    ) -> ExportJob:
        if not name or not name.strip():
            raise InvalidRequestError("Export name is required")
        if type not in EXPORT_TYPES:
            raise InvalidRequestError(f"Invalid export type: {type!r}")
        if format not in EXPORT_FORMATS:
            raise InvalidRequestError(f"Invalid export format: {format!r}")

        parsed = parse_filters(filters)
        ids = list(dict.fromkeys(normalize_id(i) for i in (document_ids or []) if str(i).strip()))
        if type == "document_export" and not ids and not parsed.document_id:
            raise InvalidRequestError("document_export needs document_ids or filters.document_id")
        if type == "template_export" and not parsed.template_id:
            raise InvalidRequestError("template_export needs filters.template_id")

        now = _now_utc()
        job = ExportJob(
            user_id=user_id,
            name=name.strip(),
            description=description,
            status="pending",
            type=type,
            format=format,
            filters=dict(filters or {}),
            include_fields=[f for f in (include_fields or []) if f],
            settings=dict(settings or {}),
            document_ids=ids,
            expires_at=now + timedelta(hours=self.expiry_hours),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info("Export %s created: type=%s format=%s user=%s", job.id, type, format, user_id)
        return job

    async def run(self, job: ExportJob) -> ExportJob:
        """Take a pending job to ``completed`` or ``failed``."""
        if job.status != "pending":
            raise InvalidRequestError(f"Export {job.id} is {job.status}, not pending")

        # Only one runner may take a job out of pending.
        claimed = self.db.execute(
            update(ExportJob)
            .where(ExportJob.id == job.id, ExportJob.status == "pending")
            .values(status="processing", started_at=_now_utc())
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        if not claimed:
            self.db.refresh(job)
            logger.info("Export %s already claimed (status: %s)", job.id, job.status)
            return job
        logger.info("Export %s started", job.id)

        try:
            records = await self._collect_records(job)
            formatted = await run_in_threadpool(self.formatter.format, records, job.format, job.name)
            data = formatted.as_bytes()
            key = build_export_path(job.user_id, formatted.filename)
            await run_in_threadpool(self.export_store.put, key, data, formatted.mime_type)

            job.status = "completed"
            job.file_path = key
            job.file_size = len(data)
            job.records_count = len(records)
            job.error_message = None
            job.completed_at = _now_utc()
            self.db.commit()
        except DocflowError as exc:
            self.db.rollback()
            logger.warning("Export %s failed: %s", job.id, exc)
            self._mark_failed(job, str(exc))
        except Exception as exc:
            self.db.rollback()
            logger.exception("Export %s failed unexpectedly", job.id)
            self._mark_failed(job, f"Unexpected error: {exc.__class__.__name__}: {exc}")
        else:
            logger.info(
                "Export %s completed: records=%d size=%d path=%s",
                job.id,
                job.records_count,
                job.file_size,
                job.file_path,
            )
        return job

    def _mark_failed(self, job: ExportJob, message: str) -> None:
        job.status = "failed"
        job.error_message = message or "Export failed"
        job.file_path = None
        job.file_size = 0
        job.records_count = 0
        job.completed_at = _now_utc()
        self.db.commit()

    def select_documents(self, job: ExportJob) -> list[Document]:
        """Source documents for *job*, in export order; always scoped to the job owner."""
        filters = parse_filters(job.filters)
        query = self.db.query(Document).filter(Document.user_id == job.user_id)

        if filters.document_type:
            query = query.filter(Document.document_type == filters.document_type)
        if filters.status:
            query = query.filter(Document.status == filters.status)
        if filters.confidence_threshold is not None:
            query = query.filter(Document.confidence >= filters.confidence_threshold)
        if filters.date_from is not None:
            query = query.filter(Document.created_at >= filters.date_from)
        if filters.date_to is not None:
            query = query.filter(Document.created_at < filters.date_to)

        if job.type == "document_export":
            ids = job.document_ids or ([normalize_id(filters.document_id)] if filters.document_id else [])
            found = {str(doc.id): doc for doc in query.filter(Document.id.in_(ids)).all()}
            return [found[i] for i in ids if i in found]

        if job.type == "template_export":
            query = query.filter(Document.template_id == filters.template_id)

        return query.order_by(Document.created_at.asc(), Document.id).all()

    async def _collect_records(self, job: ExportJob) -> list[ExportRecord]:
        documents = self.select_documents(job)
        if not documents:
            raise NoDataError("No documents matched this export")

        records = []
        for document in documents:
            try:
                result = await self.result_for(document)
            except DocflowError as exc:
                logger.warning("Export %s: skipping document %s: %s", job.id, document.id, exc)
                continue
            records.append(
                ExportRecord(
                    document_id=str(document.id),
                    document_name=document.name,
                    result=result.select_fields(job.include_fields),
                )
            )

        if not records:
            raise NoDataError(f"None of the {len(documents)} matched documents could be extracted")
        return records

    def _get_pipeline(self) -> DocumentExtractionPipeline:
        if self._pipeline is None:
            if self._pipeline_factory is None:
                raise ProviderError("No extraction pipeline is configured")
            self._pipeline = self._pipeline_factory()
        return self._pipeline

    async def result_for(self, document: Document) -> ParsingResult:
        """Stored extraction when it has fields; otherwise re-derive and store a fresh one."""
        cached = stored_result(document)
        if cached is not None and cached.extracted_fields:
            return cached

        template = load_template(self.db, document.template_id, document.user_id)
        result = await self._get_pipeline().extract_document(document, template)
        store_result(document, result)
        self.db.commit()
        return result

    # --- downloads ---

    def _check_downloadable(self, job: ExportJob) -> None:
        if effective_status(job) == "expired":
            raise ExpiredError("Export has expired")
        if job.status != "completed" or not job.file_path:
            raise NotReadyError(f"Export is not ready (status: {job.status})")

    def download(self, job: ExportJob) -> DownloadedExport:
        self._check_downloadable(job)
        data = self.export_store.get(job.file_path)
        job.download_count = int(job.download_count or 0) + 1
        self.db.commit()
        return DownloadedExport(
            data=data,
            filename=download_filename(job),
            mime_type=MIME_TYPES.get(job.format, "application/octet-stream"),
            format=job.format,
        )

    def preview(self, job: ExportJob, max_chars: Optional[int] = None) -> dict[str, Any]:
        self._check_downloadable(job)
        limit = max_chars or get_settings().export_preview_chars
        data = self.export_store.get(job.file_path)
        if job.format in TEXT_FORMATS:
            preview = data.decode("utf-8", errors="replace")[:limit]
        else:
            preview = f"(binary {EXTENSIONS.get(job.format, job.format)} file, {len(data)} bytes)"
        return {
            "format": job.format,
            "filename": download_filename(job),
            "size": len(data),
            "mime_type": MIME_TYPES.get(job.format, "application/octet-stream"),
            "preview": preview,
        }

    def signed_url(self, job: ExportJob) -> Optional[str]:
        if job.status != "completed" or not job.file_path:
            return None
        return self.export_store.signed_url(job.file_path, get_settings().export_signed_url_seconds)

    # --- delete / retry ---

    def _delete_artifact(self, job: ExportJob) -> None:
        if not job.file_path:
            return
        try:
            self.export_store.delete(job.file_path)
        except DocflowError as exc:
            logger.warning("Could not delete export file %s: %s", job.file_path, exc)

    def delete(self, job: ExportJob) -> None:
        self._delete_artifact(job)
        self.db.delete(job)
        self.db.commit()
        logger.info("Export %s deleted", job.id)

    def bulk_delete(self, user_id: str, job_ids: Iterable[str]) -> int:
        ids = [normalize_id(i) for i in job_ids if str(i).strip()]
        if not ids:
            raise InvalidRequestError("No export ids given")
        jobs = (
            self.db.query(ExportJob)
            .filter(ExportJob.user_id == user_id, ExportJob.id.in_(ids))
            .all()
        )
        for job in jobs:
            self._delete_artifact(job)
            self.db.delete(job)
        self.db.commit()
        logger.info("Bulk deleted %d exports for user %s", len(jobs), user_id)
        return len(jobs)

    def retry(self, job: ExportJob) -> ExportJob:
        """Reset a failed job to ``pending``; the next run mints a new artifact path."""
        if job.status != "failed":
            raise InvalidRequestError(f"Only failed exports can be retried (status: {job.status})")
        job.retry_count = int(job.retry_count or 0) + 1
        job.status = "pending"
        job.error_message = None
        job.file_path = None
        job.file_size = 0
        job.records_count = 0
        job.started_at = None
        job.completed_at = None
        job.expires_at = _now_utc() + timedelta(hours=self.expiry_hours)
        self.db.commit()
        logger.info("Export %s queued for retry #%d", job.id, job.retry_count)
        return job


async def run_export_job(
    job_id,
    *,
    session_factory: sessionmaker,
    export_store: ObjectStore,
    pipeline_factory: Optional[PipelineFactory] = None,
) -> Optional[str]:
    """Run one pending job in its own session (background tasks, the worker)."""
    db = session_factory()
    try:
        job = db.query(ExportJob).filter(ExportJob.id == normalize_id(job_id)).first()
        if job is None or job.status != "pending":
            return None
        service = ExportService(db, export_store, pipeline_factory=pipeline_factory)
        await service.run(job)
        return job.status
    finally:
        db.close()
