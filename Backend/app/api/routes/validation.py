"""
Validation Routes: spreadsheet upload → good/bad classification, and export
of either side as a workbook.
"""
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from pydantic import BaseModel

from app.api.deps import get_sessions
from app.core.file_validation import read_upload
from app.core.limiter import limiter, EXPORT_LIMIT, UPLOAD_LIMIT
from app.core.security import require_admin
from app.services.export import XLSX_MEDIA_TYPE, export_validation
from app.services.file_parsing import parse_upload
from app.services.row_validator import validate
from app.services.validation_sessions import ValidationSessionStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/validation", dependencies=[Depends(require_admin)])

ExportMode = Literal["good", "bad"]


# ─── Data Models ─────────────────────────────────────────────────────────────

class ValidationResponse(BaseModel):
    good: List[Dict[str, Any]]
    bad: List[Dict[str, Any]]
    goodCount: int
    badCount: int
    sessionId: str
    fileName: str


class ExportRequest(BaseModel):
    mode: ExportMode
    good: List[Dict[str, Any]] = []
    bad: List[Dict[str, Any]] = []


def xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ─── Endpoints ───────────────────────────────────────────────────────────────

@router.post("", response_model=ValidationResponse)
@limiter.limit(UPLOAD_LIMIT)
async def validate_file(
    request: Request,
    file: UploadFile = File(...),
    sheet_kind: Optional[str] = Form(None),
    sessions: ValidationSessionStore = Depends(get_sessions),
):
    """
    Classify every row of the uploaded workbook. The result is kept for a
    while under `sessionId` so it can be exported or sent to an AI job.
    """
    filename, content = await read_upload(file)
    sheets = await run_in_threadpool(parse_upload, content, filename, sheet_kind)
    result = validate(sheets)
    session = sessions.save(filename, result)

    logger.info(
        f"Validated {filename}: {result.good_count} good, {result.bad_count} bad (session {session.id})"
    )
    return ValidationResponse(**result.to_dict(), sessionId=session.id, fileName=filename)


@router.get("/export")
@limiter.limit(EXPORT_LIMIT)
async def export_from_session(
    request: Request,
    mode: ExportMode = Query(...),
    sessionId: str = Query(...),
    sessions: ValidationSessionStore = Depends(get_sessions),
):
    session = sessions.get(sessionId)
    data = session.result.to_dict()
    content = await run_in_threadpool(export_validation, mode, data["good"], data["bad"])
    return xlsx_response(content, f"validation_{mode}.xlsx")


@router.post("/export")
@limiter.limit(EXPORT_LIMIT)
async def export_inline(request: Request, body: ExportRequest):
    content = await run_in_threadpool(export_validation, body.mode, body.good, body.bad)
    return xlsx_response(content, f"validation_{body.mode}.xlsx")
