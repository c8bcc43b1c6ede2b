import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session, sessionmaker

from docflow.api.v1.exports import (
    dispatch_export,
    export_to_out,
    get_export_service,
    get_pipeline_factory,
)
from docflow.core.auth import CurrentUser, get_current_user
from docflow.core.dependencies import get_db, get_session_factory
from docflow.core.errors import InvalidRequestError, NotFoundError
from docflow.models.document import Document
from docflow.schemas.document import (
    AvailableField,
    DocumentExportOptionsResponse,
    DocumentExportRequest,
    DocumentExtractionOut,
    DocumentSummary,
    ExportOptions,
)
from docflow.schemas.export import ExportResponse
from docflow.services.ai.document_extract.service import (
    load_template,
    store_result,
    stored_result,
)
from docflow.services.export_service import (
    EXPORT_FORMATS,
    ExportService,
    PipelineFactory,
    effective_status,
    normalize_id,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_document(db: Session, document_id: str, user_id: str) -> Document:
    doc = (
        db.query(Document)
        .filter(Document.id == normalize_id(document_id), Document.user_id == user_id)
        .first()
    )
    if doc is None:
        raise NotFoundError("Document not found")
    return doc


@router.get("/documents/{document_id}/export", response_model=DocumentExportOptionsResponse)
def get_document_export_options(
    document_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    doc = _get_document(db, document_id, current_user.id)
    result = stored_result(doc)
    fields = [
        AvailableField(
            name=field.name,
            confidence=field.confidence,
            has_value=field.value not in (None, ""),
        )
        for field in (result.extracted_fields if result else ())
    ]
    return DocumentExportOptionsResponse(
        document=DocumentSummary(
            id=str(doc.id),
            name=doc.name,
            document_type=doc.document_type,
            status=doc.status,
            confidence=float(doc.confidence) if doc.confidence is not None else None,
            page_count=doc.page_count or 1,
            template_id=str(doc.template_id) if doc.template_id else None,
            fields_count=len(fields),
        ),
        export_options=ExportOptions(
            available_formats=list(EXPORT_FORMATS),
            available_fields=fields,
            suggested_name=f"{doc.name}_export",
            can_export=doc.status == "completed" and bool(fields),
        ),
    )


@router.post("/documents/{document_id}/export", response_model=ExportResponse)
async def export_document(
    document_id: str,
    payload: DocumentExportRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: ExportService = Depends(get_export_service),
    session_factory: sessionmaker = Depends(get_session_factory),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
):
    doc = _get_document(db, document_id, current_user.id)
    if doc.status != "completed":
        raise InvalidRequestError(f"Document is not processed yet (status: {doc.status})")

    job = service.create_job(
        current_user.id,
        name=payload.export_name or f"{doc.name}_export",
        type="document_export",
        format=payload.format,
        description=payload.description or f"Export of {doc.name}",
        include_fields=payload.include_fields,
        settings=payload.settings,
        document_ids=[str(doc.id)],
    )
    await dispatch_export(service, job, background_tasks, session_factory, pipeline_factory)
    return ExportResponse(
        export=export_to_out(job),
        file_url=service.signed_url(job),
        message=f'Export of "{doc.name}" as {job.format.upper()} is {effective_status(job)}',
    )


@router.post("/documents/{document_id}/extract", response_model=DocumentExtractionOut)
async def extract_document(
    document_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    pipeline_factory: PipelineFactory = Depends(get_pipeline_factory),
):
    doc = _get_document(db, document_id, current_user.id)
    template = load_template(db, doc.template_id, current_user.id)

    # Provider and normalization failures surface to the caller as-is.
    result = await pipeline_factory().extract_document(doc, template)
    store_result(doc, result)
    db.commit()
    db.refresh(doc)
    logger.info("Document %s re-extracted: %d fields", doc.id, len(result.extracted_fields))

    return DocumentExtractionOut(
        document_id=str(doc.id),
        status=doc.status,
        processed_at=doc.processed_at,
        result=result,
    )
