"""
Tests for recurring jobs: the export worker.

Covers:
  - Stale processing exports become failed (interrupted runs)
  - Recent processing exports are left alone
  - Pending exports are run oldest first, bounded by batch size
  - start_export_worker returns a cancellable task
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from docflow.models.document import Document, ExportJob
from docflow.services.ai.document_extract.contracts import (
    ExtractedField,
    ExtractionMetadata,
    ParsingResult,
)
from docflow.services.recurring_jobs import (
    fail_stale_exports,
    process_pending_exports_once,
    start_export_worker,
)

USER = "user-1"


def _now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _job(db, *, name="job", status="pending", started_at=None, created_at=None) -> ExportJob:
    job = ExportJob(
        user_id=USER,
        name=name,
        status=status,
        type="bulk_export",
        format="json",
        expires_at=_now_naive() + timedelta(days=7),
        started_at=started_at,
    )
    if created_at is not None:
        job.created_at = created_at
    db.add(job)
    db.commit()
    return job


def _cached_document(db):
    result = ParsingResult(
        document_type="invoice",
        confidence=90,
        summary="Invoice",
        extracted_fields=(ExtractedField(name="total", value="1.00", confidence=90),),
        metadata=ExtractionMetadata(provider="mock", model="mock-v1"),
    )
    doc = Document(user_id=USER, name="a.pdf", status="completed")
    doc.extraction = result.model_dump(mode="json")
    db.add(doc)
    db.commit()
    return doc


def test_stale_processing_export_fails(db):
    job = _job(db, status="processing", started_at=_now_naive() - timedelta(minutes=45))

    count = fail_stale_exports(db, stale_after_minutes=30)
    db.commit()

    assert count == 1
    db.refresh(job)
    assert job.status == "failed"
    assert "interrupted" in job.error_message
    assert job.completed_at is not None


def test_recent_processing_export_untouched(db):
    job = _job(db, status="processing", started_at=_now_naive() - timedelta(minutes=5))

    assert fail_stale_exports(db, stale_after_minutes=30) == 0
    db.refresh(job)
    assert job.status == "processing"


def test_other_statuses_untouched(db):
    old = _now_naive() - timedelta(hours=5)
    pending = _job(db, status="pending", started_at=old)
    failed = _job(db, status="failed", started_at=old)

    assert fail_stale_exports(db, stale_after_minutes=30) == 0
    db.refresh(pending)
    db.refresh(failed)
    assert pending.status == "pending"
    assert failed.status == "failed"


@pytest.mark.asyncio
async def test_process_pending_runs_oldest_first(db, export_store):
    _cached_document(db)
    newest = _job(db, name="newest", created_at=datetime(2024, 1, 3))
    oldest = _job(db, name="oldest", created_at=datetime(2024, 1, 1))
    middle = _job(db, name="middle", created_at=datetime(2024, 1, 2))

    completed = await process_pending_exports_once(db, export_store=export_store, batch_size=2)

    assert completed == 2
    db.refresh(oldest)
    db.refresh(middle)
    db.refresh(newest)
    assert oldest.status == "completed"
    assert middle.status == "completed"
    assert newest.status == "pending"


@pytest.mark.asyncio
async def test_process_pending_counts_only_completed(db, export_store):
    # no documents: the job runs but ends failed
    job = _job(db)

    completed = await process_pending_exports_once(db, export_store=export_store)

    assert completed == 0
    db.refresh(job)
    assert job.status == "failed"


@pytest.mark.asyncio
async def test_process_pending_fails_stale_first(db, export_store):
    stale = _job(db, status="processing", started_at=_now_naive() - timedelta(hours=2))

    await process_pending_exports_once(db, export_store=export_store, stale_after_minutes=30)

    db.refresh(stale)
    assert stale.status == "failed"


@pytest.mark.asyncio
async def test_start_export_worker_returns_task():
    with patch.dict(os.environ, {"ENABLE_RECURRING_JOBS": "false"}, clear=False):
        task = start_export_worker()
        assert isinstance(task, asyncio.Task)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
