"""Document extraction contracts: the canonical ParsingResult and template shapes."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExtractedField(BaseModel):
    """One named value pulled out of a document.

    Names repeat across groups (e.g. ``line_items[0].amount`` and
    ``line_items[1].amount`` share the ``line_items`` group key).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    value: Any = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    source_location: Optional[dict[str, Any]] = None


class ExtractionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    processing_time_ms: float = 0.0
    page_count: int = 1


class ParsingResult(BaseModel):
    """Canonical extraction record stored per document.

    Immutable once built; re-extraction produces a new instance that replaces
    the stored one.
    """

    model_config = ConfigDict(frozen=True)

    document_type: str
    confidence: float = Field(ge=0, le=100)
    summary: str
    extracted_fields: tuple[ExtractedField, ...] = ()
    structured_data: dict[str, Any] = Field(default_factory=dict)
    metadata: ExtractionMetadata

    def select_fields(self, names: list[str] | None) -> "ParsingResult":
        """Return a copy narrowed to *names* (case-insensitive); empty means everything."""
        if not names:
            return self
        wanted = {n.strip().lower() for n in names if n and n.strip()}
        if not wanted:
            return self

        def keep(name: str) -> bool:
            lowered = name.lower()
            return lowered in wanted or lowered.split("[", 1)[0] in wanted

        return self.model_copy(
            update={
                "extracted_fields": tuple(f for f in self.extracted_fields if keep(f.name)),
                "structured_data": {k: v for k, v in self.structured_data.items() if keep(k)},
            }
        )


class FieldSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: str = "text"
    required: bool = False
    extraction_hint: str = ""


class Template(BaseModel):
    """Read-only field template that guides and constrains extraction."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    document_type: str = "other"
    fields: tuple[FieldSpec, ...] = ()
    settings: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record) -> "Template":
        fields = []
        for raw in record.fields or []:
            if not isinstance(raw, dict):
                continue
            fields.append(
                FieldSpec(
                    name=str(raw.get("name") or "").strip() or "field",
                    type=str(raw.get("type") or "text"),
                    required=bool(raw.get("required", False)),
                    extraction_hint=str(raw.get("extraction_hint") or raw.get("description") or ""),
                )
            )
        return cls(
            id=str(record.id),
            name=record.name or "",
            document_type=record.document_type or "other",
            fields=tuple(fields),
            settings=dict(record.settings or {}),
        )
