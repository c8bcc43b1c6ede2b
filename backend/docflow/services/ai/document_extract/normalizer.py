"""Turn raw provider output into the canonical ``ParsingResult``.

Providers disagree on shape: some return an ``extracted_fields`` list, some a
``fields`` mapping, some just a flat JSON object of values. Everything here is
a pure function of (raw output, template) so that identical inputs always give
identical results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from docflow.core.errors import NormalizationError
from docflow.services.ai.common.json_tools import extract_json
from docflow.services.ai.common.providers import ProviderResult
from docflow.services.ai.document_extract.contracts import (
    ExtractedField,
    ExtractionMetadata,
    ParsingResult,
    Template,
)

DEFAULT_DOCUMENT_TYPE = "other"

# Top-level keys that describe the document rather than carry field values.
RESERVED_KEYS = {
    "document_type",
    "documentType",
    "confidence",
    "summary",
    "description",
    "structured_data",
    "structuredData",
    "metadata",
}

_BRACKET_NAME = re.compile(r"^(?P<group>[^\[\]]+)\[(?P<index>\d+)\]\.?(?P<sub>.+)$")
_LOOSE_NAME = re.compile(r"^(?P<group>[A-Za-z][A-Za-z_ ]*?)[ _](?P<index>\d+)[ _.](?P<sub>\S.*)$")


@dataclass(frozen=True)
class _RawField:
    name: str
    value: Any
    confidence: Optional[float]
    source_location: Optional[dict]


@dataclass(frozen=True)
class GroupKey:
    group: str
    index: int
    sub: str


def _slug(text: str) -> str:
    return re.sub(r"\s+", "_", text.strip())


def parse_group_name(name: str) -> Optional[GroupKey]:
    """Split ``line_items[0].amount`` (or ``line items 0 amount``) into its parts."""
    match = _BRACKET_NAME.match(name) or _LOOSE_NAME.match(name)
    if not match:
        return None
    return GroupKey(
        group=_slug(match.group("group")),
        index=int(match.group("index")),
        sub=_slug(match.group("sub")),
    )


def canonical_field_name(name: str) -> str:
    key = parse_group_name(name)
    if key is None:
        return name.strip()
    return f"{key.group}[{key.index}].{key.sub}"


def normalize_document_type(value: Any) -> str:
    if not isinstance(value, str):
        return DEFAULT_DOCUMENT_TYPE
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or DEFAULT_DOCUMENT_TYPE


def scale_confidence(value: Any) -> Optional[float]:
    """Bring a provider confidence onto the 0-100 scale.

    Floats in [0, 1] are read as fractions; integers are already percentages.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip().rstrip("%").strip()
        try:
            value = float(text) if "." in text else int(text)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    number = float(value)
    if isinstance(value, float) and 0.0 <= number <= 1.0:
        number *= 100
    return _clamp(number)


def _clamp(number: float) -> float:
    return round(min(100.0, max(0.0, number)), 2)


def _is_populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def _source_location(item: dict) -> Optional[dict]:
    for key in ("source_location", "sourceLocation", "position"):
        location = item.get(key)
        if isinstance(location, dict) and location:
            return dict(location)
    page = item.get("page")
    if isinstance(page, int) and not isinstance(page, bool):
        return {"page": page}
    return None


def _field_from_item(item: dict) -> Optional[_RawField]:
    name = item.get("name") or item.get("label") or item.get("key") or item.get("field")
    if not isinstance(name, str) or not name.strip():
        return None
    group = item.get("group")
    index = item.get("index")
    if isinstance(group, str) and group.strip() and isinstance(index, int):
        name = f"{_slug(group)}[{index}].{name.strip()}"
    return _RawField(
        name=canonical_field_name(name),
        value=item.get("value"),
        confidence=scale_confidence(item.get("confidence")),
        source_location=_source_location(item),
    )


def _fields_from_list(items: list) -> list[_RawField]:
    fields = []
    for item in items:
        if isinstance(item, dict):
            field = _field_from_item(item)
            if field is not None:
                fields.append(field)
    return fields


def _fields_from_mapping(mapping: dict) -> list[_RawField]:
    fields = []
    for name, value in mapping.items():
        if not str(name).strip():
            continue
        if isinstance(value, dict) and "value" in value:
            fields.append(
                _RawField(
                    name=canonical_field_name(str(name)),
                    value=value.get("value"),
                    confidence=scale_confidence(value.get("confidence")),
                    source_location=_source_location(value),
                )
            )
        else:
            fields.append(_RawField(canonical_field_name(str(name)), value, None, None))
    return fields


def _fields_from_flat_object(payload: dict) -> list[_RawField]:
    fields = []
    for name, value in payload.items():
        if name in RESERVED_KEYS or not str(name).strip():
            continue
        if isinstance(value, list) and value and all(isinstance(row, dict) for row in value):
            group = _slug(str(name))
            for index, row in enumerate(value):
                for sub, sub_value in row.items():
                    fields.append(_RawField(f"{group}[{index}].{_slug(str(sub))}", sub_value, None, None))
        else:
            fields.append(_RawField(canonical_field_name(str(name)), value, None, None))
    return fields


def _collect_fields(payload: dict | list) -> list[_RawField]:
    if isinstance(payload, list):
        if not any(isinstance(item, dict) for item in payload):
            raise NormalizationError("Model output is a list without field objects")
        return _fields_from_list(payload)

    for key in ("extracted_fields", "extractedFields", "fields"):
        value = payload.get(key)
        if isinstance(value, list):
            return _fields_from_list(value)
        if isinstance(value, dict):
            return _fields_from_mapping(value)
    return _fields_from_flat_object(payload)


def _match_key(name: str) -> str:
    return re.sub(r"[\s\-]+", "_", name.strip().lower())


def _apply_template(
    fields: list[_RawField], template: Template
) -> tuple[list[_RawField], float]:
    """Reorder/fill *fields* to follow the template; return them with the fill ratio."""
    by_name: dict[str, _RawField] = {}
    by_group: dict[str, list[_RawField]] = {}
    for field in fields:
        by_name.setdefault(_match_key(field.name), field)
        key = parse_group_name(field.name)
        if key is not None:
            by_group.setdefault(_match_key(key.group), []).append(field)

    used: set[int] = set()
    result: list[_RawField] = []
    populated: dict[str, bool] = {}

    for spec in template.fields:
        wanted = _match_key(spec.name)
        exact = by_name.get(wanted)
        if exact is not None:
            used.add(id(exact))
            result.append(
                _RawField(spec.name, exact.value, exact.confidence, exact.source_location)
            )
            populated[spec.name] = _is_populated(exact.value)
        elif wanted in by_group:
            members = by_group[wanted]
            used.update(id(member) for member in members)
            result.extend(members)
            populated[spec.name] = any(_is_populated(m.value) for m in members)
        else:
            result.append(_RawField(spec.name, None, 0.0, None))
            populated[spec.name] = False

    if template.settings.get("keep_unmapped_fields"):
        result.extend(field for field in fields if id(field) not in used)

    required = [spec for spec in template.fields if spec.required] or list(template.fields)
    filled = sum(1 for spec in required if populated.get(spec.name))
    ratio = filled / len(required) if required else 1.0
    return result, ratio


def build_structured_data(fields: list[ExtractedField], extra: Optional[dict] = None) -> dict[str, Any]:
    """Group indexed fields into ordered row lists; everything else stays scalar."""
    data: dict[str, Any] = {}
    groups: dict[str, dict[int, dict[str, Any]]] = {}

    for field in fields:
        key = parse_group_name(field.name)
        if key is None:
            if field.name not in data:
                data[field.name] = field.value
            continue
        if key.group not in groups:
            groups[key.group] = {}
            data.setdefault(key.group, None)
        groups[key.group].setdefault(key.index, {}).setdefault(key.sub, field.value)

    for group, rows in groups.items():
        data[group] = [rows[index] for index in sorted(rows)]

    for key, value in (extra or {}).items():
        if key not in data:
            data[key] = value
    return data


def _summary(payload: dict | list, document_type: str) -> str:
    if isinstance(payload, dict):
        for key in ("summary", "description"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return " ".join(value.split())
    return f"Processed {document_type} document"


def _synthesized_confidence(fields: list[_RawField]) -> float:
    if not fields:
        return 0.0
    scored = [f.confidence for f in fields if f.confidence is not None]
    if scored:
        return sum(scored) / len(scored)
    return 100.0 * sum(1 for f in fields if _is_populated(f.value)) / len(fields)


def normalize(
    raw: ProviderResult,
    template: Optional[Template] = None,
    *,
    page_count: Optional[int] = None,
) -> ParsingResult:
    """Build a ``ParsingResult`` from one provider response.

    With a template, the document type is forced, fields follow template
    order (missing ones are kept with ``value=None``), and confidence is
    scaled down by the share of required fields actually filled. Missing
    required fields never make the call fail; unreadable output does.
    """
    payload = extract_json(raw.raw_text)
    if payload is None:
        raise NormalizationError("Model output is not JSON")
    if not payload:
        raise NormalizationError("Model output is empty")

    fields = _collect_fields(payload)
    provider_confidence = scale_confidence(payload.get("confidence")) if isinstance(payload, dict) else None

    if template is not None and template.fields:
        document_type = normalize_document_type(template.document_type)
        fields, ratio = _apply_template(fields, template)
        if provider_confidence is not None:
            confidence = provider_confidence * ratio
        else:
            confidence = ratio * 100.0
    else:
        if template is not None:
            document_type = normalize_document_type(template.document_type)
        elif isinstance(payload, dict):
            document_type = normalize_document_type(
                payload.get("document_type") or payload.get("documentType")
            )
        else:
            document_type = DEFAULT_DOCUMENT_TYPE
        confidence = provider_confidence if provider_confidence is not None else _synthesized_confidence(fields)

    extracted = tuple(
        ExtractedField(
            name=f.name,
            value=f.value,
            confidence=f.confidence,
            source_location=f.source_location,
        )
        for f in fields
    )

    extra = None
    if isinstance(payload, dict):
        provided = payload.get("structured_data", payload.get("structuredData"))
        if isinstance(provided, dict):
            extra = provided

    if page_count is None and isinstance(payload, dict):
        meta = payload.get("metadata")
        if isinstance(meta, dict) and isinstance(meta.get("pages"), int):
            page_count = meta["pages"]

    return ParsingResult(
        document_type=document_type,
        confidence=_clamp(confidence),
        summary=_summary(payload, document_type),
        extracted_fields=extracted,
        structured_data=build_structured_data(list(extracted), extra),
        metadata=ExtractionMetadata(
            provider=raw.provider,
            model=raw.model,
            processing_time_ms=raw.latency_ms,
            page_count=max(1, page_count or 1),
        ),
    )
