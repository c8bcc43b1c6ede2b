from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ExportStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ExportType(StrEnum):
    DOCUMENT_EXPORT = "document_export"
    TEMPLATE_EXPORT = "template_export"
    BULK_EXPORT = "bulk_export"


class ExportFormat(StrEnum):
    JSON = "json"
    CSV = "csv"
    EXCEL = "excel"
    STRUCTURED = "structured"
    PDF = "pdf"
    ZIP = "zip"


class ExportCreate(BaseModel):
    """Type/format stay plain strings here; the service answers bad values with 400."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    description: Optional[str] = None
    type: str = "document_export"
    format: str = "json"
    filters: dict[str, Any] = Field(default_factory=dict)
    include_fields: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("include_fields", "includeFields"),
    )
    settings: dict[str, Any] = Field(default_factory=dict)
    document_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("document_ids", "documentIds"),
    )


class ExportOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: ExportStatus
    type: ExportType
    format: ExportFormat
    filters: dict[str, Any] = Field(default_factory=dict)
    include_fields: list[str] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    document_ids: list[str] = Field(default_factory=list)
    file_path: Optional[str] = None
    file_size: int = 0
    records_count: int = 0
    download_count: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ExportListResponse(BaseModel):
    exports: list[ExportOut]
    pagination: Pagination


class ExportResponse(BaseModel):
    export: ExportOut
    file_url: Optional[str] = None
    message: Optional[str] = None


class ExportDeleteResponse(BaseModel):
    deleted: int


class ExportPreview(BaseModel):
    format: str
    filename: str
    size: int
    mime_type: str
    preview: str
