"""
AI Job Routes: submission, progress polling, cancellation, deletion and
result download. The admin client polls `/validation/ai-progress` while any
job is queued or processing.
"""
import logging
import time
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import get_enricher, get_job_store, get_processor, get_sessions, get_storage
from app.api.routes.validation import xlsx_response
from app.core.config import settings
from app.core.file_validation import read_upload, sanitize_filename
from app.core.limiter import limiter, JOB_LIMIT, STATUS_LIMIT
from app.core.security import require_admin
from app.services.cleanup import cleanup_old_files, purge_expired_jobs, reap_stalled_jobs
from app.services.enrichment import Enricher
from app.services.file_parsing import parse_upload, row_from_payload, rows_in_order
from app.services.job_processor import JobProcessor
from app.services.job_store import ClientStatus, JobPhase, JobStore
from app.services.progress import download_result, get_job_detail, list_jobs, summarize
from app.services.sheets import Row
from app.services.storage import LocalStorageProvider, StorageProvider
from app.services.validation_sessions import ValidationSessionStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/validation", dependencies=[Depends(require_admin)])

CLEANUP_INTERVAL_SECONDS = 3600
_last_cleanup: float = 0.0


# ─── Data Models ─────────────────────────────────────────────────────────────

class SessionJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    mode: Literal["good", "bad"] = "bad"
    batch_concurrency: Optional[int] = Field(default=None, alias="batchConcurrency", ge=1)


class RowsJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(default="questions.xlsx", alias="fileName")
    rows: List[Dict[str, Any]] = Field(min_length=1)
    batch_concurrency: Optional[int] = Field(default=None, alias="batchConcurrency", ge=1)


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _ensure_enrichment_available(enricher: Enricher) -> None:
    if not getattr(enricher, "is_configured", True):
        raise HTTPException(status_code=503, detail="AI enrichment is not configured on this server.")


async def _start_job(
    store: JobStore,
    processor: JobProcessor,
    file_name: str,
    rows: list[Row],
    batch_concurrency: Optional[int],
) -> Dict[str, Any]:
    """Create a job and hand it to the processor; a job that cannot start is failed."""
    job = await run_in_threadpool(store.create, file_name)
    try:
        job = processor.submit(job.id, rows, batch_concurrency or settings.AI_BATCH_CONCURRENCY)
    except Exception as e:
        logger.error(f"Job {job.id} could not be started: {e}")
        if store.get(job.id).is_active:
            await run_in_threadpool(
                store.update, job.id, phase=JobPhase.ERROR, message=f"AI enrichment failed to start: {e}"
            )
        raise
    return summarize(job)


def _lazy_cleanup(store: JobStore, storage: StorageProvider) -> None:
    """Retention sweep, at most once per CLEANUP_INTERVAL_SECONDS."""
    global _last_cleanup
    now = time.time()
    if now - _last_cleanup < CLEANUP_INTERVAL_SECONDS:
        return
    _last_cleanup = now
    reap_stalled_jobs(store, settings.JOB_STALL_TIMEOUT_SECONDS)
    purge_expired_jobs(store, storage, settings.JOB_RETENTION_HOURS)
    if isinstance(storage, LocalStorageProvider):
        cleanup_old_files(str(storage.base_dir), settings.JOB_RETENTION_HOURS * 3600)


# ─── Submission ──────────────────────────────────────────────────────────────

@router.post("/ai-jobs", status_code=202)
@limiter.limit(JOB_LIMIT)
async def submit_file_job(
    request: Request,
    file: UploadFile = File(...),
    sheet_kind: Optional[str] = Form(None),
    batch_concurrency: Optional[int] = Form(None, ge=1),
    store: JobStore = Depends(get_job_store),
    processor: JobProcessor = Depends(get_processor),
    enricher: Enricher = Depends(get_enricher),
):
    """Enrich every row of the uploaded workbook."""
    _ensure_enrichment_available(enricher)
    filename, content = await read_upload(file)
    sheets = await run_in_threadpool(parse_upload, content, filename, sheet_kind)
    return await _start_job(store, processor, filename, rows_in_order(sheets), batch_concurrency)


@router.post("/ai-jobs/from-session", status_code=202)
@limiter.limit(JOB_LIMIT)
async def submit_session_job(
    request: Request,
    body: SessionJobRequest,
    store: JobStore = Depends(get_job_store),
    processor: JobProcessor = Depends(get_processor),
    enricher: Enricher = Depends(get_enricher),
    sessions: ValidationSessionStore = Depends(get_sessions),
):
    """Enrich the good or bad rows of an earlier validation run."""
    _ensure_enrichment_available(enricher)
    session = sessions.get(body.session_id)
    outcomes = session.result.good if body.mode == "good" else session.result.bad
    rows = [outcome.row for outcome in outcomes]
    return await _start_job(store, processor, session.file_name, rows, body.batch_concurrency)


@router.post("/ai-jobs/from-rows", status_code=202)
@limiter.limit(JOB_LIMIT)
async def submit_rows_job(
    request: Request,
    body: RowsJobRequest,
    store: JobStore = Depends(get_job_store),
    processor: JobProcessor = Depends(get_processor),
    enricher: Enricher = Depends(get_enricher),
):
    """Enrich rows sent inline, in the {sheet, row, data|original} shape of a validation result."""
    _ensure_enrichment_available(enricher)
    rows = [row_from_payload(item) for item in body.rows]
    return await _start_job(store, processor, sanitize_filename(body.file_name), rows, body.batch_concurrency)


# ─── Progress ────────────────────────────────────────────────────────────────

@router.get("/ai-progress")
@limiter.limit(STATUS_LIMIT)
async def get_progress(
    request: Request,
    status: Optional[ClientStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=100),
    store: JobStore = Depends(get_job_store),
    storage: StorageProvider = Depends(get_storage),
):
    _lazy_cleanup(store, storage)
    body = list_jobs(store, status=status, page=page, page_size=page_size or settings.JOBS_PAGE_SIZE)
    body["pollIntervalSeconds"] = settings.POLL_INTERVAL_SECONDS
    return body


@router.get("/ai-progress/{job_id}")
@limiter.limit(STATUS_LIMIT)
async def get_job(request: Request, job_id: str, store: JobStore = Depends(get_job_store)):
    return get_job_detail(store, job_id)


@router.post("/ai-progress/{job_id}/cancel")
async def cancel_job(job_id: str, store: JobStore = Depends(get_job_store)):
    return summarize(store.request_cancel(job_id))


@router.delete("/ai-progress/{job_id}")
async def delete_job(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    storage: StorageProvider = Depends(get_storage),
):
    job = store.delete(job_id)
    file_ref = (job.result_payload or {}).get("file_ref")
    if file_ref:
        await run_in_threadpool(storage.delete, file_ref)
    return {"deleted": job_id}


@router.get("/ai-progress/{job_id}/download")
async def download_job_result(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    storage: StorageProvider = Depends(get_storage),
):
    try:
        result = await run_in_threadpool(download_result, store, storage, job_id)
    except FileNotFoundError:
        raise HTTPException(404, "Result file missing from storage.")
    return xlsx_response(result.content, result.file_name)
