import os
import time
import logging
from datetime import timedelta
from typing import Optional

from app.core.errors import InvalidTransition, JobNotFound
from app.services.job_store import JobPhase, JobStore
from app.services.storage import StorageProvider

logger = logging.getLogger(__name__)


def purge_expired_jobs(store: JobStore, storage: Optional[StorageProvider], max_age_hours: int) -> int:
    """
    Deletes finished jobs whose last update is older than max_age_hours,
    together with their stored result files.
    """
    cutoff = store.now() - timedelta(hours=max_age_hours)
    removed = 0
    for job in store.list(lambda j: j.is_terminal and j.last_updated < cutoff):
        file_ref = (job.result_payload or {}).get("file_ref")
        try:
            store.delete(job.id)
        except (JobNotFound, InvalidTransition) as e:
            logger.warning(f"Retention: skipped job {job.id}: {e}")
            continue
        if file_ref and storage is not None:
            storage.delete(file_ref)
        removed += 1
    if removed:
        logger.info(f"Retention: removed {removed} job(s) older than {max_age_hours}h.")
    return removed


def reap_stalled_jobs(store: JobStore, stall_timeout_seconds: int) -> int:
    """
    Marks running jobs that stopped reporting progress as failed. Queued jobs
    are reaped too: a queued job that is never submitted has no owner.
    """
    cutoff = store.now() - timedelta(seconds=stall_timeout_seconds)
    reaped = 0
    for job in store.list(lambda j: j.is_active and j.last_updated < cutoff):
        try:
            store.update(
                job.id,
                phase=JobPhase.ERROR,
                message=f"Job timed out: no progress for {stall_timeout_seconds}s",
            )
            reaped += 1
        except (JobNotFound, InvalidTransition):
            # Finished or removed in the meantime
            continue
    if reaped:
        logger.warning(f"Reaped {reaped} stalled job(s).")
    return reaped


def cleanup_old_files(directory: str, max_age_seconds: int = 86400):
    """
    Deletes files in the specified directory that are older than max_age_seconds.

    Args:
        directory: Path to the directory to clean.
        max_age_seconds: Max file age in seconds (default: 24h).
    """
    if not os.path.exists(directory):
        return 0

    now = time.time()
    count = 0

    for filename in os.listdir(directory):
        file_path = os.path.join(directory, filename)
        if not os.path.isfile(file_path):
            continue

        if now - os.path.getmtime(file_path) > max_age_seconds:
            try:
                os.remove(file_path)
                count += 1
            except OSError as e:
                logger.warning(f"Failed to delete old file {filename}: {e}")

    if count > 0:
        logger.info(f"Cleanup: Removed {count} old files (>{max_age_seconds}s) from {directory}.")
    return count
