"""
job_processor.py
~~~~~~~~~~~~~~~~
Runs AI enrichment jobs as asyncio tasks.

Each job walks its rows in batches of at most `batch_concurrency` outstanding
calls to the enrichment collaborator and writes one progress update to the
Job Store per batch. Only the task that owns a job writes to it; the sole
outside write is an administrative cancel, which the task notices between
batches.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from app.core.config import settings
from app.core.errors import (
    InvalidTransition,
    JobNotFound,
    PermanentEnrichmentError,
    TransientEnrichmentError,
)
from app.services.enrichment import Enricher
from app.services.export import export_rows
from app.services.job_store import Job, JobPhase, JobStore
from app.services.sheets import Row
from app.services.storage import StorageProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorConfig:
    batch_timeout: float = settings.AI_BATCH_TIMEOUT_SECONDS
    failure_threshold: int = settings.AI_FAILURE_THRESHOLD
    max_retries: int = settings.AI_MAX_RETRIES
    retry_base_delay: float = settings.AI_RETRY_BASE_DELAY_SEC
    retry_max_delay: float = settings.AI_RETRY_MAX_DELAY_SEC
    max_duration: float = settings.AI_JOB_MAX_DURATION_SECONDS
    max_batch_concurrency: int = settings.AI_MAX_BATCH_CONCURRENCY


@dataclass
class RowOutcome:
    row: Row                      # enriched row, or the source row on failure
    failure: str | None = None
    transient: bool = False       # failure was a transient error after retries


@dataclass
class _JobRun:
    """Mutable progress of one running job; owned by its task only."""
    job_id: str
    file_name: str
    total: int
    output: list[Row] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    consecutive_failed_batches: int = 0
    last_error: str | None = None

    @property
    def processed(self) -> int:
        return len(self.output)

    @property
    def enriched(self) -> int:
        return self.processed - len(self.failures)

    def record(self, outcomes: list[RowOutcome]) -> None:
        for outcome in outcomes:
            self.output.append(outcome.row)
            if outcome.failure:
                self.failures.append({
                    "sheet": outcome.row.sheet.value,
                    "row": outcome.row.index,
                    "reason": outcome.failure,
                })
                self.last_error = outcome.failure


def result_file_name(file_name: str) -> str:
    stem = os.path.splitext(os.path.basename(file_name))[0] or "questions"
    return f"enhanced_{stem}.xlsx"


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        enricher: Enricher,
        storage: StorageProvider,
        config: ProcessorConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.enricher = enricher
        self.storage = storage
        self.config = config or ProcessorConfig()
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    # ─── Public API ──────────────────────────────────────────────────────────

    def submit(self, job_id: str, rows: Iterable[Row], batch_concurrency: int) -> Job:
        """
        Move a queued job to `running` and start processing it in the
        background. Must be called from inside a running event loop.

        Raises:
            JobNotFound:       unknown job id.
            InvalidTransition: the job is not queued (already owned or finished).
            ValueError:        batch_concurrency < 1.
        """
        if batch_concurrency < 1:
            raise ValueError("batch_concurrency must be at least 1")
        concurrency = min(batch_concurrency, self.config.max_batch_concurrency)

        job = self.store.get(job_id)
        if job.phase != JobPhase.QUEUED or job_id in self._tasks:
            raise InvalidTransition(f"Job {job_id} is {job.phase.value}; only queued jobs can be submitted")

        rows = list(rows)
        run = _JobRun(job_id=job_id, file_name=job.file_name, total=len(rows))
        job = self.store.update(
            job_id,
            phase=JobPhase.RUNNING,
            processed_items=0,
            total_items=run.total,
            message=f"Starting AI enrichment of {run.total} rows",
        )

        if run.total == 0:
            return self.store.update(
                job_id,
                phase=JobPhase.COMPLETE,
                progress=100,
                message="Completed: no rows to process",
                result_payload=self._save_result(run, partial=False),
            )

        task = asyncio.get_running_loop().create_task(
            self._run(run, rows, concurrency), name=f"ai-job-{job_id}"
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        logger.info(f"Job {job_id} submitted: {run.total} rows, concurrency {concurrency}.")
        return job

    async def join(self, job_id: str) -> None:
        """Wait for a job's task to finish (no-op if it is not running)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Processor stopped {len(tasks)} running job(s).")

    @property
    def running_jobs(self) -> list[str]:
        return list(self._tasks)

    # ─── Job Lifecycle ───────────────────────────────────────────────────────

    async def _run(self, run: _JobRun, rows: list[Row], concurrency: int) -> None:
        try:
            await asyncio.wait_for(self._process(run, rows, concurrency), timeout=self.config.max_duration)
        except asyncio.TimeoutError:
            await self._fail(
                run,
                f"Job timed out after {self.config.max_duration:.0f}s "
                f"({run.processed}/{run.total} rows processed)",
            )
        except (InvalidTransition, JobNotFound) as e:
            # Cancelled or deleted by an administrator while a batch was in flight
            logger.info(f"Job {run.job_id} stopped: {e}")
        except asyncio.CancelledError:
            await self._fail(run, "Processing interrupted by server shutdown")
            raise
        except Exception as e:
            logger.error(f"Job {run.job_id} crashed: {e}", exc_info=True)
            await self._fail(run, f"Unexpected processor error: {e}")

    async def _process(self, run: _JobRun, rows: list[Row], concurrency: int) -> None:
        for start in range(0, run.total, concurrency):
            if self.store.is_cancelled(run.job_id):
                logger.info(f"Job {run.job_id} cancelled; no further batches issued.")
                return

            batch = rows[start:start + concurrency]
            outcomes, batch_failed = await self._run_batch(batch)

            if self.store.is_cancelled(run.job_id):
                logger.info(f"Job {run.job_id} cancelled; discarding {len(batch)} in-flight result(s).")
                return

            run.record(outcomes)
            run.consecutive_failed_batches = run.consecutive_failed_batches + 1 if batch_failed else 0

            if run.consecutive_failed_batches >= self.config.failure_threshold:
                await self._fail(
                    run,
                    f"AI service unreachable: {run.consecutive_failed_batches} consecutive batches failed "
                    f"(last error: {run.last_error})",
                )
                return

            failed_note = f", {len(run.failures)} failed" if run.failures else ""
            await self._update(
                run.job_id,
                processed_items=run.processed,
                progress=run.processed * 100 // run.total,
                message=f"Enriched {run.processed}/{run.total} rows{failed_note}",
            )

        payload = await asyncio.to_thread(self._save_result, run, False)
        try:
            await self._update(
                run.job_id,
                phase=JobPhase.COMPLETE,
                processed_items=run.processed,
                progress=100,
                message=f"Completed: {run.enriched}/{run.total} rows enriched, {len(run.failures)} failed",
                result_payload=payload,
            )
        except (InvalidTransition, JobNotFound):
            await self._discard_result(payload)
            raise

    async def _run_batch(self, batch: list[Row]) -> tuple[list[RowOutcome], bool]:
        """
        Enrich one batch. The batch counts as failed when it times out or when
        every row ended in a transient error.
        """
        try:
            outcomes = await asyncio.wait_for(
                asyncio.gather(*(self._enrich_row(row) for row in batch)),
                timeout=self.config.batch_timeout,
            )
        except asyncio.TimeoutError:
            reason = f"Batch timed out after {self.config.batch_timeout:.0f}s"
            logger.warning(reason)
            return [RowOutcome(row=row, failure=reason, transient=True) for row in batch], True
        return list(outcomes), all(o.transient for o in outcomes)

    async def _enrich_row(self, row: Row) -> RowOutcome:
        """
        Call the enrichment collaborator with exponential backoff on transient
        errors. A failing row is returned unmodified with its failure reason.
        """
        for attempt in range(self.config.max_retries + 1):
            try:
                enriched = await self.enricher.enrich(row)
                return RowOutcome(row=enriched.row)
            except PermanentEnrichmentError as e:
                logger.warning("Row %s/%d not enriched: %s", row.sheet.value, row.index, e)
                return RowOutcome(row=row, failure=str(e))
            except TransientEnrichmentError as e:
                if attempt >= self.config.max_retries:
                    logger.error(
                        "Row %s/%d: all %d retries exhausted. Last error: %s",
                        row.sheet.value, row.index, self.config.max_retries, e,
                    )
                    return RowOutcome(row=row, failure=str(e), transient=True)
                delay = min(
                    self.config.retry_base_delay * (2 ** attempt),
                    self.config.retry_max_delay,
                ) + random.uniform(0, self.config.retry_base_delay)
                logger.warning(
                    "Transient error on row %s/%d attempt %d (%s), retrying in %.1f s.",
                    row.sheet.value, row.index, attempt + 1, e, delay,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    # ─── Results ─────────────────────────────────────────────────────────────

    def _save_result(self, run: _JobRun, partial: bool) -> dict[str, Any]:
        file_name = result_file_name(run.file_name)
        file_ref = self.storage.save_bytes(export_rows(run.output), file_name)
        return {
            "file_ref": file_ref,
            "file_name": file_name,
            "total_rows": run.total,
            "processed_rows": run.processed,
            "enriched_rows": run.enriched,
            "failed_rows": len(run.failures),
            "failures": run.failures,
            "partial": partial,
        }

    async def _discard_result(self, payload: dict[str, Any]) -> None:
        """Remove a result file whose job was cancelled or deleted meanwhile."""
        await asyncio.to_thread(self.storage.delete, payload["file_ref"])
        logger.info("Discarded result file %s.", payload["file_ref"])

    async def _fail(self, run: _JobRun, message: str) -> None:
        """Move the job to `error`, keeping completed batches when there are any."""
        fields: dict[str, Any] = {"phase": JobPhase.ERROR, "message": f"AI enrichment failed: {message}"}
        if run.output:
            fields["result_payload"] = await asyncio.to_thread(self._save_result, run, True)
        try:
            await self._update(run.job_id, **fields)
            logger.error(f"Job {run.job_id} marked as FAILED: {message}")
        except (InvalidTransition, JobNotFound) as e:
            logger.info(f"Job {run.job_id} already finished or removed; not marking failed ({e}).")
            if "result_payload" in fields:
                await self._discard_result(fields["result_payload"])

    async def _update(self, job_id: str, **fields: Any) -> Job:
        # JobStore.update commits to the repository synchronously
        return await asyncio.to_thread(self.store.update, job_id, **fields)
