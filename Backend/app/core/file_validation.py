"""
file_validation.py
~~~~~~~~~~~~~~~~~~
Security hardening for spreadsheet uploads.
Checks extension, size and content signature (magic numbers) before any
parsing happens, and returns the upload's bytes with a sanitized name.
"""
import logging
import os
import re

from fastapi import HTTPException, UploadFile

from app.core.config import settings
from app.services.file_parsing import ALLOWED_EXTENSIONS

logger = logging.getLogger(__name__)

# Magic Numbers (File Signatures)
SIGNATURES = {
    # Office Open XML (xlsx) - technically a ZIP archive
    "xlsx": b"\x50\x4B\x03\x04",
    # Legacy Microsoft Office (xls) - OLE2 Compound File
    "xls":  b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1",
}


def sanitize_filename(filename: str) -> str:
    """Strip any path and keep only [A-Za-z0-9_.-]."""
    base_name = os.path.basename(filename or "")
    safe = re.sub(r"[^a-zA-Z0-9_.-]", "_", base_name)
    return safe or "upload.xlsx"


def check_signature(filename: str, header: bytes) -> None:
    """
    Validate file content matches its extension using magic numbers.
    Raises HTTPException(400) if invalid.
    """
    name = filename.lower()

    if name.endswith(".xlsx"):
        if not header.startswith(SIGNATURES["xlsx"]):
            logger.warning(f"Validation failed: {filename} claims to be XLSX but lacks ZIP signature.")
            raise HTTPException(
                status_code=400,
                detail="Invalid file content. Extension says .xlsx but content does not match (ZIP signature missing).",
            )

    elif name.endswith(".xls"):
        if not header.startswith(SIGNATURES["xls"]):
            logger.warning(f"Validation failed: {filename} claims to be XLS but lacks OLE2 signature.")
            raise HTTPException(
                status_code=400,
                detail="Invalid file content. Extension says .xls but content does not match (OLE2 signature missing).",
            )

    elif name.endswith(".csv"):
        # No magic number for CSV; null bytes mean binary content
        if b"\x00" in header:
            logger.warning(f"Validation failed: {filename} contains null bytes, likely binary.")
            raise HTTPException(status_code=400, detail="Invalid file content. CSV file appears to be binary.")


async def read_upload(file: UploadFile) -> tuple[str, bytes]:
    """
    Read an uploaded spreadsheet after checking extension, size and signature.

    Returns:
        (sanitized filename, content bytes)
    """
    filename = sanitize_filename(file.filename)
    extension = os.path.splitext(filename)[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise HTTPException(400, "Invalid file type. Only CSV and Excel supported.")

    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise HTTPException(413, f"File too large. Max size: {settings.MAX_UPLOAD_SIZE_MB}MB")
    if not content:
        raise HTTPException(400, "Uploaded file is empty.")

    check_signature(filename, content[:8])
    return filename, content
