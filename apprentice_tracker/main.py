"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apprentice_tracker.config import get_settings
from apprentice_tracker.database import engine, Base, SessionLocal
from apprentice_tracker.logging_config import setup_logging
from apprentice_tracker.api.routes import router
from apprentice_tracker.api.documents import router as documents_router
# Import models to register them with SQLAlchemy Base
from apprentice_tracker.models.domain import User, Apprentice, Company, Mentor, CaseFile, Document, Comment
from apprentice_tracker.models.activity import Activity
from apprentice_tracker.services.errors import (
    ExtractionFailed,
    NotFound,
    StorageError,
    TrackerError,
    ValidationError,
)
from apprentice_tracker.services.records import ensure_admin_user
from apprentice_tracker.services.state_machine import default_pipeline_display

setup_logging()
logger = logging.getLogger(__name__)

settings = get_settings()

ERROR_STATUS = {
    ValidationError: 400,
    NotFound: 404,
    ExtractionFailed: 502,
    StorageError: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        ensure_admin_user(db)
    finally:
        db.close()

    for warning in settings.validate_ocr_config():
        logger.warning(warning)
    yield


app = FastAPI(
    title="Apprentice Tracker",
    description="Tracks apprenticeship placement case files through a five-stage review pipeline.",
    version=settings.service_version,
    lifespan=lifespan,
)
app.state.pipeline_display = default_pipeline_display()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["tracker"])
app.include_router(documents_router, prefix="/api")


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    """Service errors carry a user-facing message; the class picks the status."""
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    if status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}", exc_info=exc)
    return JSONResponse(status_code=status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies or params: same {"message"} shape, plus the offending fields."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    first = errors[0] if errors else None
    message = "Invalid request data"
    if first:
        field = ".".join(str(part) for part in first["loc"] if part not in ("body", "query", "path"))
        message = f"Invalid request data: {field or 'request'}: {first['msg']}"
    return JSONResponse(status_code=422, content={"message": message, "errors": errors})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything unexpected becomes a generic 500 with a JSON body."""
    logger.error(f"Unhandled exception on {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Apprentice Tracker"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
