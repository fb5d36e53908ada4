"""
SQL-backed persistence collaborator for the Job Store.
Snapshots are written on every committed mutation and loaded once at startup.
"""
import logging
from datetime import datetime, timezone
from typing import List

from sqlalchemy.orm import sessionmaker

from app.db.models import AiJobRecord
from app.services.job_store import Job, JobPhase

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlJobRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, job: Job) -> None:
        with self._session_factory() as db:
            record = db.get(AiJobRecord, job.id) or AiJobRecord(id=job.id)
            record.file_name = job.file_name
            record.phase = job.phase.value
            record.progress = job.progress
            record.message = job.message
            record.processed_items = job.processed_items
            record.total_items = job.total_items
            record.result_payload = job.result_payload
            record.cancelled = job.cancelled
            record.version = job.version
            record.created_at = job.created_at
            record.last_updated = job.last_updated
            db.add(record)
            db.commit()

    def delete(self, job_id: str) -> None:
        with self._session_factory() as db:
            record = db.get(AiJobRecord, job_id)
            if record is not None:
                db.delete(record)
                db.commit()

    def load_all(self) -> List[Job]:
        with self._session_factory() as db:
            records = db.query(AiJobRecord).all()
            jobs = [
                Job(
                    id=r.id,
                    file_name=r.file_name,
                    phase=JobPhase(r.phase),
                    message=r.message or "",
                    created_at=_aware(r.created_at),
                    last_updated=_aware(r.last_updated),
                    progress=r.progress or 0,
                    processed_items=r.processed_items,
                    total_items=r.total_items,
                    result_payload=r.result_payload,
                    cancelled=bool(r.cancelled),
                    version=r.version or 0,
                )
                for r in records
            ]
        logger.info(f"Loaded {len(jobs)} persisted job(s).")
        return jobs
