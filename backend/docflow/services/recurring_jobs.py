from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from docflow.core import dependencies
from docflow.core.config import get_settings
from docflow.core.storage import ObjectStore, get_export_store
from docflow.models.document import ExportJob
from docflow.services.ai.document_extract.service import default_pipeline_factory
from docflow.services.export_service import ExportService, PipelineFactory, _now_utc

logger = logging.getLogger(__name__)


def fail_stale_exports(db: Session, *, stale_after_minutes: int) -> int:
    """
    Idempotent cleanup:
    - processing + started_at older than the cutoff => failed (the run was interrupted)
    Keeps "processing always ends completed or failed" true across restarts.
    """
    now = _now_utc()
    cutoff = now - timedelta(minutes=max(1, stale_after_minutes))

    stale = (
        db.execute(
            select(ExportJob).where(
                ExportJob.status == "processing",
                ExportJob.started_at.is_not(None),
                ExportJob.started_at < cutoff,
            )
        )
        .scalars()
        .all()
    )

    for job in stale:
        job.status = "failed"
        job.error_message = f"Export interrupted: still processing after {stale_after_minutes} minutes"
        job.file_path = None
        job.file_size = 0
        job.records_count = 0
        job.completed_at = now
    return len(stale)


async def process_pending_exports_once(
    db: Session,
    *,
    export_store: ObjectStore,
    pipeline_factory: Optional[PipelineFactory] = None,
    batch_size: int = 10,
    stale_after_minutes: int = 30,
) -> int:
    """
    Runs due pending exports, oldest first.
    Returns number of jobs that reached ``completed``.
    """
    failed = fail_stale_exports(db, stale_after_minutes=stale_after_minutes)
    if failed:
        logger.warning("Marked %s stale exports as failed", failed)
    db.commit()

    due = (
        db.execute(
            select(ExportJob)
            .where(ExportJob.status == "pending")
            .order_by(ExportJob.created_at.asc(), ExportJob.id)
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    service = ExportService(db, export_store, pipeline_factory=pipeline_factory)
    completed = 0
    for job in due:
        await service.run(job)
        if job.status == "completed":
            completed += 1
    return completed


async def _export_worker_loop(*, interval_seconds: int, batch_size: int) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or dependencies.SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            db = dependencies.SessionLocal()
            try:
                completed = await process_pending_exports_once(
                    db,
                    export_store=get_export_store(),
                    pipeline_factory=default_pipeline_factory,
                    batch_size=batch_size,
                    stale_after_minutes=settings.export_stale_after_minutes,
                )
                if completed:
                    logger.info("Export worker completed %s jobs", completed)
            finally:
                db.close()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Export worker error")
            await asyncio.sleep(error_sleep)


def start_export_worker() -> asyncio.Task | None:
    """
    Starts the in-process export worker. Safe to call multiple times in the same process;
    callers should keep their own reference if they need explicit cancellation.
    """
    settings = get_settings()
    interval = int(max(5, min(300, settings.export_worker_interval_seconds or 30)))
    batch_size = int(max(1, settings.export_worker_batch_size or 10))
    return asyncio.create_task(_export_worker_loop(interval_seconds=interval, batch_size=batch_size))
