import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from app.api import endpoints
from app.core.config import settings
from app.core.errors import (
    FileParseError,
    Forbidden,
    InvalidTransition,
    JobNotFound,
    NotReady,
    SessionNotFound,
    ValidationSchemaError,
)
from app.core.limiter import limiter
from app.core.security import TokenAdminAuthorizer
from app.db.base import init_db, make_engine, make_session_factory
from app.services.enrichment import AzureEnrichmentClient
from app.services.job_processor import JobProcessor
from app.services.job_repository import SqlJobRepository
from app.services.job_store import JobStore
from app.services.storage import get_storage_provider
from app.services.validation_sessions import ValidationSessionStore

logger = logging.getLogger(__name__)


def _job_repository():
    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL is empty: AI jobs will not survive a restart.")
        return None
    try:
        engine = make_engine(settings.DATABASE_URL)
        init_db(engine)
    except SQLAlchemyError as e:
        logger.error(f"DATABASE INIT FAILED: {e}. AI jobs will not survive a restart.")
        return None
    return SqlJobRepository(make_session_factory(engine))


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = JobStore(repository=_job_repository())
    store.restore()
    storage = get_storage_provider()
    enricher = AzureEnrichmentClient()
    if not enricher.is_configured:
        logger.warning("Azure OpenAI is not configured: AI job submission is disabled.")

    app.state.job_store = store
    app.state.storage = storage
    app.state.enricher = enricher
    app.state.processor = JobProcessor(store, enricher, storage)
    app.state.validation_sessions = ValidationSessionStore(settings.VALIDATION_SESSION_TTL_SECONDS)
    app.state.authorizer = TokenAdminAuthorizer.from_settings()
    yield
    await app.state.processor.shutdown()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Error Mapping ───────────────────────────────────────────────────────────

@app.exception_handler(ValidationSchemaError)
async def schema_error_handler(request: Request, exc: ValidationSchemaError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "sheets": exc.sheets})


@app.exception_handler(FileParseError)
async def parse_error_handler(request: Request, exc: FileParseError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(JobNotFound)
@app.exception_handler(SessionNotFound)
async def not_found_handler(request: Request, exc: KeyError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
@app.exception_handler(NotReady)
async def conflict_handler(request: Request, exc: RuntimeError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(Forbidden)
async def forbidden_handler(request: Request, exc: Forbidden):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


# Set all CORS enabled origins
_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(endpoints.router, prefix="/api", tags=["api"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "project": settings.PROJECT_NAME}


@app.get("/")
def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME}"}
