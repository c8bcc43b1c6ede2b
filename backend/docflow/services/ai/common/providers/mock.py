"""Mock provider: deterministic invoice extraction for tests and local runs."""

from __future__ import annotations

import json

import httpx

from .base import ProviderRequest, ProviderSpec

MOCK_EXTRACTION = {
    "document_type": "invoice",
    "confidence": 90,
    "summary": "Invoice INV-001 from Mock Supplies Ltd",
    "extracted_fields": [
        {"name": "invoice_number", "value": "INV-001", "confidence": 95, "type": "text"},
        {"name": "invoice_date", "value": "2024-01-15", "confidence": 92, "type": "date"},
        {"name": "vendor", "value": "Mock Supplies Ltd", "confidence": 90, "type": "text"},
        {"name": "total_amount", "value": "150.00", "confidence": 88, "type": "currency"},
        {"name": "line_items[0].description", "value": "Paper", "confidence": 85},
        {"name": "line_items[0].amount", "value": "100.00", "confidence": 85},
        {"name": "line_items[1].description", "value": "Toner", "confidence": 84},
        {"name": "line_items[1].amount", "value": "50.00", "confidence": 84},
    ],
}


async def generate(request: ProviderRequest, api_key: str, client: httpx.AsyncClient) -> tuple[str, int, int]:
    text = json.dumps(MOCK_EXTRACTION)
    return text, len(request.prompt.split()), len(text.split())


SPEC = ProviderSpec(
    name="mock",
    default_model="mock-v1",
    supports_vision=True,
    generate=generate,
    requires_api_key=False,
)
