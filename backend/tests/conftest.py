import json
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docflow.core.config import get_settings
from docflow.core.errors import NotFoundError, StorageError
from docflow.models.document import Base

TEST_USER = "00000000-0000-0000-0000-000000000001"
OTHER_USER = "00000000-0000-0000-0000-000000000002"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests patch env vars (provider, dispatch mode); never leak a cached Settings.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class InMemoryObjectStore:
    """ObjectStore double; flip ``fail_put``/``fail_delete`` to simulate outages."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, Optional[str]]] = {}
        self.deleted: list[str] = []
        self.fail_put = False
        self.fail_delete = False

    def put(self, key, data, content_type=None):
        if self.fail_put:
            raise StorageError(f"Upload of {key} failed")
        self.objects[key] = (data, content_type)
        return key

    def get(self, key):
        if key not in self.objects:
            raise NotFoundError(f"Object {key} not found")
        return self.objects[key][0]

    def delete(self, key):
        if self.fail_delete:
            raise StorageError(f"Delete of {key} failed")
        self.objects.pop(key, None)
        self.deleted.append(key)

    def signed_url(self, key, expires_in):
        return f"https://storage.test/{key}?expires={expires_in}"


class ScriptedProvider:
    """Provider ``generate`` that replays canned responses (or raises them).

    The last response repeats once the script runs out.
    """

    def __init__(self, *responses):
        self.responses = list(responses) or [json.dumps({"extracted_fields": []})]
        self.calls = []

    async def generate(self, request, api_key, client):
        self.calls.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if not isinstance(item, str):
            item = json.dumps(item)
        return item, 10, 20

    def spec(self, name="scripted", supports_vision=True):
        from docflow.services.ai.common.providers import ProviderSpec

        return ProviderSpec(
            name=name,
            default_model=f"{name}-model",
            supports_vision=supports_vision,
            generate=self.generate,
            requires_api_key=False,
        )

    def adapter(self, name="scripted", supports_vision=True, transport=None):
        from docflow.services.ai.common.router import ResolvedConfig
        from docflow.services.ai.document_extract.adapter import ExtractionAdapter

        spec = self.spec(name, supports_vision)
        config = ResolvedConfig(
            spec=spec,
            model=spec.default_model,
            api_key="test-key",
            temperature=0.1,
            max_tokens=512,
            timeout_seconds=5,
        )
        return ExtractionAdapter(config, transport=transport)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def export_store():
    return InMemoryObjectStore()


@pytest.fixture
def document_store():
    return InMemoryObjectStore()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def api_provider():
    return ScriptedProvider()


@pytest_asyncio.fixture
async def client(session_factory, export_store, document_store, api_provider):
    """In-process ASGI client; the user comes from the ``X-Test-Sub`` header."""
    from fastapi import Request

    from docflow.api.v1.exports import get_pipeline_factory
    from docflow.core.auth import CurrentUser, get_current_user
    from docflow.core.dependencies import get_db, get_session_factory
    from docflow.core.storage import get_export_store
    from docflow.main import app
    from docflow.services.ai.document_extract.service import DocumentExtractionPipeline

    def _test_get_current_user(request: Request):
        return CurrentUser(
            id=request.headers.get("x-test-sub", TEST_USER),
            email="tests@example.com",
        )

    def _test_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def _pipeline():
        return DocumentExtractionPipeline(api_provider.adapter(), document_store)

    app.dependency_overrides[get_current_user] = _test_get_current_user
    app.dependency_overrides[get_db] = _test_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_export_store] = lambda: export_store
    app.dependency_overrides[get_pipeline_factory] = lambda: _pipeline

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
