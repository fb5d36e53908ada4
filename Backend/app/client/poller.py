"""
poller.py
~~~~~~~~~
Caller-side half of the progress contract. The server never pushes; the admin
client re-reads the job list on a fixed interval while at least one job is
queued or running, goes quiet when none are, and wakes up again on the next
submission.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import httpx

from app.core.errors import JobNotFound, NotReady

logger = logging.getLogger(__name__)

PROGRESS_PATH = "/api/validation/ai-progress"
ACTIVE_STATUSES = frozenset({"queued", "processing"})
FINISHED_STATUSES = frozenset({"completed", "failed", "cancelled"})


@dataclass(frozen=True)
class RefreshPolicy:
    interval: float = 3.0

    def should_poll(self, statuses: Iterable[str]) -> bool:
        return any(s in ACTIVE_STATUSES for s in statuses)

    def next_delay(self, statuses: Iterable[str]) -> Optional[float]:
        """Seconds until the next refresh, or None when polling should stop."""
        return self.interval if self.should_poll(statuses) else None


@dataclass(frozen=True)
class JobChange:
    job_id: str
    previous: Optional[dict[str, Any]]
    current: dict[str, Any]

    @property
    def status_changed(self) -> bool:
        return self.previous is None or self.previous.get("status") != self.current.get("status")

    @property
    def finished(self) -> bool:
        return self.status_changed and self.current.get("status") in FINISHED_STATUSES

    @property
    def ready_for_download(self) -> bool:
        return self.status_changed and self.current.get("status") == "completed"


def _fingerprint(summary: dict[str, Any]) -> tuple:
    return (summary.get("status"), summary.get("progress"), summary.get("message"))


class ProgressPoller:
    """
    Polls the job list over HTTP and reports per-job changes.

    `client` is an ``httpx.AsyncClient`` already pointed at the API (base_url)
    and carrying the admin credentials.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RefreshPolicy | None = None,
        on_change: Optional[Callable[[JobChange], None]] = None,
        path: str = PROGRESS_PATH,
    ):
        self.client = client
        self.policy = policy or RefreshPolicy()
        self.on_change = on_change
        self.path = path
        self._jobs: dict[str, dict[str, Any]] = {}
        self._pending_submission = False
        self._remote_active = 0
        self._wakeup = asyncio.Event()

    @property
    def jobs(self) -> dict[str, dict[str, Any]]:
        return dict(self._jobs)

    @property
    def has_active_jobs(self) -> bool:
        if self._pending_submission or self._remote_active > 0:
            return True
        return self.policy.should_poll(j.get("status", "") for j in self._jobs.values())

    def next_delay(self) -> Optional[float]:
        return self.policy.interval if self.has_active_jobs else None

    def notify_submitted(self) -> None:
        """Called after a job submission so an idle poller starts again."""
        self._pending_submission = True
        self._wakeup.set()

    async def refresh(self) -> list[JobChange]:
        response = await self.client.get(self.path)
        response.raise_for_status()
        body = response.json()

        changes: list[JobChange] = []
        for summary in body.get("jobs", []):
            previous = self._jobs.get(summary["id"])
            if previous is None or _fingerprint(previous) != _fingerprint(summary):
                changes.append(JobChange(job_id=summary["id"], previous=previous, current=summary))
            self._jobs[summary["id"]] = summary

        self._remote_active = int(body.get("stats", {}).get("activeJobs", 0))
        self._pending_submission = False

        for change in changes:
            logger.debug(
                "Job %s: %s -> %s (%s%%)",
                change.job_id,
                change.previous.get("status") if change.previous else None,
                change.current.get("status"),
                change.current.get("progress"),
            )
            if self.on_change is not None:
                self.on_change(change)
        return changes

    async def download(self, job_id: str) -> bytes:
        response = await self.client.get(f"{self.path}/{job_id}/download")
        if response.status_code == 409:
            raise NotReady(response.json().get("detail", f"Job {job_id} is not complete"))
        if response.status_code == 404:
            raise JobNotFound(job_id)
        response.raise_for_status()
        return response.content

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until `stop` is set, sleeping whenever no job is active."""
        while not stop.is_set():
            self._wakeup.clear()
            try:
                await self.refresh()
            except httpx.HTTPError as e:
                logger.warning(f"Progress refresh failed: {e}")

            delay = self.next_delay()
            waiters = [asyncio.ensure_future(stop.wait()), asyncio.ensure_future(self._wakeup.wait())]
            try:
                await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
