import logging
import math
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from sqlalchemy.orm import Session, sessionmaker

from docflow.core.auth import CurrentUser, get_current_user
from docflow.core.config import get_settings
from docflow.core.dependencies import get_db, get_session_factory
from docflow.core.storage import ObjectStore, get_export_store
from docflow.models.document import ExportJob
from docflow.schemas.export import (
    ExportCreate,
    ExportDeleteResponse,
    ExportListResponse,
    ExportOut,
    ExportPreview,
    ExportResponse,
    Pagination,
)
from docflow.services.ai.document_extract.service import default_pipeline_factory
from docflow.services.export_service import (
    ExportService,
    PipelineFactory,
    effective_status,
    run_export_job,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_pipeline_factory() -> PipelineFactory:
    return default_pipeline_factory


def get_export_service(
    db: Session = Depends(get_db),
    export_store: ObjectStore = Depends(get_export_store),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
) -> ExportService:
    return ExportService(db, export_store, pipeline_factory=pipeline_factory)


def export_to_out(job: ExportJob) -> ExportOut:
    return ExportOut(
        id=str(job.id),
        name=job.name,
        description=job.description,
        status=effective_status(job),
        type=job.type,
        format=job.format,
        filters=job.filters or {},
        include_fields=job.include_fields or [],
        settings=job.settings or {},
        document_ids=job.document_ids or [],
        file_path=job.file_path,
        file_size=job.file_size or 0,
        records_count=job.records_count or 0,
        download_count=job.download_count or 0,
        retry_count=job.retry_count or 0,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        expires_at=job.expires_at,
    )


async def dispatch_export(
    service: ExportService,
    job: ExportJob,
    background_tasks: BackgroundTasks,
    session_factory: Optional[sessionmaker] = None,
    pipeline_factory: Optional[PipelineFactory] = None,
) -> ExportJob:
    """Start a pending job according to ``EXPORT_DISPATCH_MODE``."""
    mode = get_settings().export_dispatch_mode
    if mode == "inline":
        await service.run(job)
    elif mode == "background":
        background_tasks.add_task(
            run_export_job,
            job.id,
            session_factory=session_factory or get_session_factory(),
            export_store=service.export_store,
            pipeline_factory=pipeline_factory,
        )
    # worker: stays pending until the recurring worker picks it up
    return job


def _response(service: ExportService, job: ExportJob, message: Optional[str] = None) -> ExportResponse:
    return ExportResponse(export=export_to_out(job), file_url=service.signed_url(job), message=message)


@router.get("/exports", response_model=ExportListResponse)
def list_exports(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    format: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    jobs, total = service.list_jobs(
        current_user.id,
        page=page,
        limit=limit,
        status=status,
        type=type,
        format=format,
    )
    return ExportListResponse(
        exports=[export_to_out(job) for job in jobs],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.post("/exports", response_model=ExportResponse, status_code=201)
async def create_export(
    payload: ExportCreate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
    session_factory: sessionmaker = Depends(get_session_factory),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
):
    job = service.create_job(
        current_user.id,
        name=payload.name,
        type=payload.type,
        format=payload.format,
        description=payload.description,
        filters=payload.filters,
        include_fields=payload.include_fields,
        settings=payload.settings,
        document_ids=payload.document_ids,
    )
    await dispatch_export(service, job, background_tasks, session_factory, pipeline_factory)
    return _response(service, job)


@router.delete("/exports", response_model=ExportDeleteResponse)
def bulk_delete_exports(
    ids: str = Query(..., description="Comma-separated export ids"),
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    deleted = service.bulk_delete(current_user.id, ids.split(","))
    return ExportDeleteResponse(deleted=deleted)


@router.get("/exports/{export_id}", response_model=ExportResponse)
def get_export(
    export_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    job = service.get_job(export_id, current_user.id)
    return _response(service, job)


@router.delete("/exports/{export_id}", response_model=ExportDeleteResponse)
def delete_export(
    export_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    job = service.get_job(export_id, current_user.id)
    service.delete(job)
    return ExportDeleteResponse(deleted=1)


@router.post("/exports/{export_id}/retry", response_model=ExportResponse)
async def retry_export(
    export_id: str,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
    session_factory: sessionmaker = Depends(get_session_factory),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
):
    job = service.get_job(export_id, current_user.id)
    service.retry(job)
    await dispatch_export(service, job, background_tasks, session_factory, pipeline_factory)
    return _response(service, job)


@router.get("/exports/{export_id}/download")
def download_export(
    export_id: str,
    materialize: bool = Query(False),
    current_user: CurrentUser = Depends(get_current_user),
    service: ExportService = Depends(get_export_service),
):
    job = service.get_job(export_id, current_user.id)
    if not materialize:
        return ExportPreview(**service.preview(job))

    download = service.download(job)
    return Response(
        content=download.data,
        media_type=download.mime_type,
        headers={
            "Content-Disposition": f'attachment; filename="{download.filename}"',
            "Cache-Control": "no-store",
        },
    )
