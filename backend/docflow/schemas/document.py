from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from docflow.services.ai.document_extract.contracts import ParsingResult


class DocumentExportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    format: str = "json"
    export_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("export_name", "exportName", "name"),
    )
    description: Optional[str] = None
    include_fields: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("include_fields", "includeFields"),
    )
    settings: dict[str, Any] = Field(default_factory=dict)


class DocumentSummary(BaseModel):
    id: str
    name: str
    document_type: Optional[str] = None
    status: str
    confidence: Optional[float] = None
    page_count: int = 1
    template_id: Optional[str] = None
    fields_count: int = 0


class AvailableField(BaseModel):
    name: str
    confidence: Optional[float] = None
    has_value: bool


class ExportOptions(BaseModel):
    available_formats: list[str]
    available_fields: list[AvailableField]
    suggested_name: str
    can_export: bool


class DocumentExportOptionsResponse(BaseModel):
    document: DocumentSummary
    export_options: ExportOptions


class DocumentExtractionOut(BaseModel):
    document_id: str
    status: str
    processed_at: Optional[datetime] = None
    result: ParsingResult
