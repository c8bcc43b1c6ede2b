"""Error taxonomy shared by the extraction pipeline and the export service.

Every class carries the HTTP status the API layer answers with, so handlers
never need to inspect messages to decide how to respond.
"""

from __future__ import annotations


class DocflowError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500


class InvalidRequestError(DocflowError):
    """Malformed request: missing name, unknown enum value, bad filters."""

    status_code = 400


class NotFoundError(DocflowError):
    status_code = 404


class ProviderError(DocflowError):
    """The AI backend was unreachable, timed out, or answered in an unexpected shape."""

    status_code = 502


class NormalizationError(DocflowError):
    """Raw model output could not be read as structured data at all."""

    status_code = 502


class TextExtractionError(DocflowError):
    status_code = 422


class NoDataError(DocflowError):
    """An export resolved zero usable source documents."""

    status_code = 422


class StorageError(DocflowError):
    status_code = 502


class NotReadyError(DocflowError):
    status_code = 400


class ExpiredError(DocflowError):
    status_code = 410
