"""
progress.py
~~~~~~~~~~~
Read side of the AI job API: the summaries and stats the admin client polls,
plus result download.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from app.core.errors import NotReady
from app.services.job_processor import result_file_name
from app.services.job_store import ClientStatus, Job, JobPhase, JobStore
from app.services.storage import StorageProvider


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def summarize(job: Job) -> dict[str, Any]:
    """JobSummary as sent to the client."""
    payload = job.result_payload or {}
    return {
        "id": job.id,
        "fileName": job.file_name,
        "status": job.client_status.value,
        "progress": job.progress,
        "message": job.message,
        "processedItems": job.processed_items,
        "totalItems": job.total_items,
        "failedItems": payload.get("failed_rows"),
        "createdAt": _iso(job.created_at),
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "lastUpdated": _iso(job.last_updated),
        "downloadable": job.phase == JobPhase.COMPLETE and bool(payload.get("file_ref")),
    }


def job_stats(jobs: list[Job]) -> dict[str, int]:
    statuses = [j.client_status for j in jobs]
    return {
        "totalJobs": len(jobs),
        "completedJobs": statuses.count(ClientStatus.COMPLETED),
        "activeJobs": sum(1 for j in jobs if j.is_active),
        "failedJobs": statuses.count(ClientStatus.FAILED),
        "cancelledJobs": statuses.count(ClientStatus.CANCELLED),
    }


def list_jobs(
    store: JobStore,
    status: Optional[ClientStatus] = None,
    page: int = 1,
    page_size: int = 4,
) -> dict[str, Any]:
    """
    Newest-first page of job summaries. Stats always cover every job so the
    client can decide whether to keep polling even when filtering.
    """
    all_jobs = store.list()
    jobs = all_jobs if status is None else [j for j in all_jobs if j.client_status == status]

    total_pages = max(1, math.ceil(len(jobs) / page_size))
    page = min(max(page, 1), total_pages)
    start = (page - 1) * page_size

    return {
        "jobs": [summarize(j) for j in jobs[start:start + page_size]],
        "stats": job_stats(all_jobs),
        "page": page,
        "pageSize": page_size,
        "totalPages": total_pages,
    }


def get_job_detail(store: JobStore, job_id: str) -> dict[str, Any]:
    job = store.get(job_id)
    detail = summarize(job)
    payload = job.result_payload or {}
    detail["failures"] = payload.get("failures", [])
    detail["partial"] = bool(payload.get("partial"))
    return detail


@dataclass
class ResultFile:
    file_name: str
    content: bytes


def download_result(store: JobStore, storage: StorageProvider, job_id: str) -> ResultFile:
    """
    Raises:
        JobNotFound:       unknown id.
        NotReady:          job is not complete.
        FileNotFoundError: the stored result is gone.
    """
    job = store.get(job_id)
    if job.phase != JobPhase.COMPLETE:
        raise NotReady(f"Job {job_id} is {job.client_status.value}; result is available once completed")
    payload = job.result_payload or {}
    file_ref = payload.get("file_ref")
    if not file_ref:
        raise FileNotFoundError(f"Job {job_id} has no stored result")
    return ResultFile(
        file_name=payload.get("file_name") or result_file_name(job.file_name),
        content=storage.read_bytes(file_ref),
    )
