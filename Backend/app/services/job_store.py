import dataclasses
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from app.core.errors import InvalidTransition, JobNotFound

logger = logging.getLogger(__name__)


class JobPhase(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


class ClientStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({JobPhase.COMPLETE, JobPhase.ERROR})
ACTIVE_PHASES = frozenset({JobPhase.QUEUED, JobPhase.RUNNING})

_ALLOWED_TRANSITIONS: Dict[JobPhase, frozenset] = {
    JobPhase.QUEUED: frozenset({JobPhase.QUEUED, JobPhase.RUNNING, JobPhase.ERROR}),
    JobPhase.RUNNING: frozenset({JobPhase.RUNNING, JobPhase.COMPLETE, JobPhase.ERROR}),
    JobPhase.COMPLETE: frozenset(),
    JobPhase.ERROR: frozenset(),
}

UPDATABLE_FIELDS = frozenset({
    "phase", "progress", "message", "processed_items", "total_items", "result_payload",
})

CANCELLED_MESSAGE = "Cancelled by administrator"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of an AI job. Every store mutation produces a new snapshot."""
    id: str
    file_name: str
    phase: JobPhase
    message: str
    created_at: datetime
    last_updated: datetime
    progress: int = 0
    processed_items: Optional[int] = None
    total_items: Optional[int] = None
    result_payload: Optional[Dict[str, Any]] = None
    cancelled: bool = False
    version: int = 0  # bumped on every committed update

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def client_status(self) -> ClientStatus:
        if self.phase == JobPhase.COMPLETE:
            return ClientStatus.COMPLETED
        if self.phase == JobPhase.ERROR:
            return ClientStatus.CANCELLED if self.cancelled else ClientStatus.FAILED
        if self.phase == JobPhase.RUNNING:
            return ClientStatus.PROCESSING
        return ClientStatus.QUEUED

    @property
    def started_at(self) -> Optional[datetime]:
        return None if self.phase == JobPhase.QUEUED else self.last_updated

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.last_updated if self.phase == JobPhase.COMPLETE else None


class JobRepository(Protocol):
    """Persistence collaborator: durable copies of job snapshots."""

    def save(self, job: Job) -> None: ...

    def delete(self, job_id: str) -> None: ...

    def load_all(self) -> List[Job]: ...


class _Entry:
    __slots__ = ("job", "lock", "seq")

    def __init__(self, job: Job, seq: int):
        self.job = job
        self.lock = threading.Lock()
        self.seq = seq


class JobStore:
    """
    Process-wide registry of AI jobs.

    Each entry has its own lock, so updates to one job are linearized without
    blocking unrelated jobs. Readers get immutable snapshots: they observe
    either the state before or after an update, never a mix.
    """

    def __init__(self, repository: Optional[JobRepository] = None, clock: Callable[[], datetime] = utcnow):
        self._repository = repository
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._registry_lock = threading.Lock()
        self._seq = itertools.count()

    # ─── Lookup ──────────────────────────────────────────────────────────────

    def _entry(self, job_id: str) -> _Entry:
        with self._registry_lock:
            entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFound(job_id)
        return entry

    def get(self, job_id: str) -> Job:
        return self._entry(job_id).job

    def list(self, predicate: Optional[Callable[[Job], bool]] = None) -> List[Job]:
        """All jobs (optionally filtered), newest first."""
        with self._registry_lock:
            entries = list(self._entries.values())
        entries.sort(key=lambda e: (e.job.created_at, e.seq), reverse=True)
        jobs = [e.job for e in entries]
        if predicate is not None:
            jobs = [j for j in jobs if predicate(j)]
        return jobs

    def __contains__(self, job_id: str) -> bool:
        with self._registry_lock:
            return job_id in self._entries

    def now(self) -> datetime:
        return self._clock()

    # ─── Mutations ───────────────────────────────────────────────────────────

    def create(self, file_name: str) -> Job:
        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            file_name=file_name,
            phase=JobPhase.QUEUED,
            message="Job created",
            created_at=now,
            last_updated=now,
            progress=0,
            version=1,
        )
        self._persist(job)
        with self._registry_lock:
            self._entries[job.id] = _Entry(job, next(self._seq))
        logger.info(f"Job {job.id} created for {file_name}.")
        return job

    def update(self, job_id: str, **fields: Any) -> Job:
        """
        Atomically merge `fields` into the job.

        Raises:
            JobNotFound:       unknown id.
            InvalidTransition: job is complete/error, progress would regress,
                               or the phase change is not allowed.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot update job field(s): {', '.join(sorted(unknown))}")

        entry = self._entry(job_id)
        with entry.lock:
            current = entry.job
            if current.is_terminal:
                raise InvalidTransition(f"Job {job_id} is {current.phase.value} and can no longer be updated")

            phase = JobPhase(fields.get("phase", current.phase))
            if phase not in _ALLOWED_TRANSITIONS[current.phase]:
                raise InvalidTransition(f"Job {job_id}: cannot move from {current.phase.value} to {phase.value}")

            progress = int(fields.get("progress", current.progress))
            if progress < current.progress:
                raise InvalidTransition(
                    f"Job {job_id}: progress cannot go backwards ({current.progress} -> {progress})"
                )
            if progress > 100:
                raise InvalidTransition(f"Job {job_id}: progress {progress} exceeds 100")
            if phase == JobPhase.COMPLETE:
                progress = 100

            if "result_payload" in fields and phase not in TERMINAL_PHASES:
                raise InvalidTransition(f"Job {job_id}: result payload can only be attached when the job finishes")

            updated = dataclasses.replace(
                current,
                **{k: v for k, v in fields.items() if k not in ("phase", "progress")},
                phase=phase,
                progress=progress,
                last_updated=self._clock(),
                version=current.version + 1,
            )
            self._persist(updated)
            entry.job = updated

        if phase != current.phase:
            logger.info(f"Job {job_id}: {current.phase.value} -> {phase.value} ({updated.message})")
        return updated

    def request_cancel(self, job_id: str) -> Job:
        """
        Administrative cancellation: the job moves to `error` with the cancel
        flag set. A running processor notices between batches and stops.
        """
        entry = self._entry(job_id)
        with entry.lock:
            current = entry.job
            if current.is_terminal:
                raise InvalidTransition(f"Job {job_id} already finished ({current.phase.value})")
            updated = dataclasses.replace(
                current,
                phase=JobPhase.ERROR,
                cancelled=True,
                message=CANCELLED_MESSAGE,
                last_updated=self._clock(),
                version=current.version + 1,
            )
            self._persist(updated)
            entry.job = updated
        logger.info(f"Job {job_id} cancelled.")
        return updated

    def is_cancelled(self, job_id: str) -> bool:
        return self.get(job_id).cancelled

    def delete(self, job_id: str) -> Job:
        """Remove a finished job. Active jobs must be cancelled first."""
        entry = self._entry(job_id)
        with entry.lock:
            if entry.job.is_active:
                raise InvalidTransition(
                    f"Job {job_id} is still {entry.job.phase.value}; cancel it before deleting"
                )
            if self._repository is not None:
                self._repository.delete(job_id)
            with self._registry_lock:
                self._entries.pop(job_id, None)
        logger.info(f"Job {job_id} deleted.")
        return entry.job

    # ─── Persistence ─────────────────────────────────────────────────────────

    def _persist(self, job: Job) -> None:
        if self._repository is not None:
            self._repository.save(job)

    def restore(self) -> int:
        """
        Load persisted jobs. Jobs that were queued or running when the process
        stopped have no processor anymore and are marked as failed.
        """
        if self._repository is None:
            return 0
        jobs = sorted(self._repository.load_all(), key=lambda j: j.created_at)
        for job in jobs:
            if job.is_active:
                job = dataclasses.replace(
                    job,
                    phase=JobPhase.ERROR,
                    message="Interrupted by server restart",
                    last_updated=self._clock(),
                    version=job.version + 1,
                )
                self._persist(job)
            with self._registry_lock:
                self._entries[job.id] = _Entry(job, next(self._seq))
        logger.info(f"Restored {len(jobs)} job(s) from persistence.")
        return len(jobs)
