import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docflow.api.v1.documents import router as documents_router
from docflow.api.v1.exports import router as exports_router
from docflow.core.config import get_settings
from docflow.core.dependencies import init_db
from docflow.core.errors import DocflowError
from docflow.services.recurring_jobs import start_export_worker

settings = get_settings()

_export_worker_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Docflow API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _export_worker_task
    init_db()
    if _export_worker_task is None and settings.enable_recurring_jobs:
        _export_worker_task = start_export_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _export_worker_task
    if _export_worker_task is not None:
        _export_worker_task.cancel()
        _export_worker_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(exports_router, prefix="/api/v1", tags=["exports"])
app.include_router(documents_router, prefix="/api/v1", tags=["documents"])


@app.exception_handler(DocflowError)
async def _docflow_error_handler(request: Request, exc: DocflowError):
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.__class__.__name__, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc) or exc.__class__.__name__})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # 5xx details stay hidden unless EXPOSE_ERROR_DETAILS is set.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health():
    return {"status": "ok"}
