import logging
import re
import uuid
from typing import Optional, Protocol

from supabase import create_client

from docflow.core.config import get_settings
from docflow.core.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    """Key -> bytes store with signed-URL retrieval."""

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def signed_url(self, key: str, expires_in: int) -> Optional[str]: ...


def _safe_filename(filename: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", filename or "").strip("._")
    return cleaned or "export"


def build_export_path(user_id: str, filename: str) -> str:
    """Mint a fresh object key; a retried job never reuses a previous path."""
    return f"{user_id}/{uuid.uuid4().hex}_{_safe_filename(filename)}"


def _result_error(result) -> Optional[str]:
    if isinstance(result, dict):
        return result.get("error")
    return getattr(result, "error", None)


class SupabaseObjectStore:
    def __init__(self, client, bucket: str) -> None:
        self._client = client
        self.bucket = bucket

    def _bucket(self):
        return self._client.storage.from_(self.bucket)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        options = {"content-type": content_type} if content_type else None
        try:
            result = self._bucket().upload(key, data, options)
        except Exception as exc:
            raise StorageError(f"Upload to {self.bucket}/{key} failed") from exc
        if _result_error(result):
            raise StorageError(f"Upload to {self.bucket}/{key} failed: {_result_error(result)}")
        return key

    def get(self, key: str) -> bytes:
        try:
            data = self._bucket().download(key)
        except Exception as exc:
            if "not found" in str(exc).lower():
                raise NotFoundError(f"Object {self.bucket}/{key} not found") from exc
            raise StorageError(f"Download of {self.bucket}/{key} failed") from exc
        if not data:
            raise NotFoundError(f"Object {self.bucket}/{key} not found")
        return data

    def delete(self, key: str) -> None:
        try:
            self._bucket().remove([key])
        except Exception as exc:
            raise StorageError(f"Delete of {self.bucket}/{key} failed") from exc

    def signed_url(self, key: str, expires_in: int) -> Optional[str]:
        try:
            result = self._bucket().create_signed_url(key, expires_in)
        except Exception:
            logger.warning("Could not sign URL for %s/%s", self.bucket, key, exc_info=True)
            return None
        if isinstance(result, dict):
            return result.get("signedURL") or result.get("signedUrl")
        return None


def get_storage_client():
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise RuntimeError("Supabase credentials are not configured")
    return create_client(settings.supabase_url, key)


def get_export_store() -> ObjectStore:
    return SupabaseObjectStore(get_storage_client(), get_settings().storage_bucket_exports)


def get_document_store() -> ObjectStore:
    return SupabaseObjectStore(get_storage_client(), get_settings().storage_bucket_documents)
