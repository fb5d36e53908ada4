"""
test_job_store.py
~~~~~~~~~~~~~~~~~
State machine, snapshot and concurrency guarantees of the Job Store.
"""
from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import InvalidTransition, JobNotFound
from app.services.job_store import CANCELLED_MESSAGE, ClientStatus, JobPhase, JobStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class TestCreateAndGet:

    def test_new_job_is_queued(self, store):
        job = store.create("bank.xlsx")
        assert job.phase == JobPhase.QUEUED
        assert job.client_status == ClientStatus.QUEUED
        assert job.progress == 0
        assert job.file_name == "bank.xlsx"
        assert job.started_at is None
        assert store.get(job.id) == job

    def test_unknown_id(self, store):
        with pytest.raises(JobNotFound):
            store.get("missing")
        with pytest.raises(JobNotFound):
            store.update("missing", progress=10)

    def test_list_is_newest_first(self):
        clock = FakeClock()
        store = JobStore(clock=clock)
        ids = []
        for name in ("a.xlsx", "b.xlsx", "c.xlsx"):
            ids.append(store.create(name).id)
            clock.advance(1)
        assert [j.id for j in store.list()] == list(reversed(ids))

    def test_list_filter(self, store):
        first = store.create("a.xlsx")
        store.create("b.xlsx")
        store.update(first.id, phase=JobPhase.RUNNING)
        running = store.list(lambda j: j.phase == JobPhase.RUNNING)
        assert [j.id for j in running] == [first.id]


class TestUpdate:

    def test_merge_keeps_other_fields(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING, total_items=10)
        updated = store.update(job.id, progress=40, processed_items=4)
        assert updated.total_items == 10
        assert updated.processed_items == 4
        assert updated.phase == JobPhase.RUNNING
        assert updated.created_at == job.created_at
        assert updated.version == job.version + 2

    def test_snapshots_are_immutable(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING, progress=50)
        assert job.progress == 0
        assert job.phase == JobPhase.QUEUED

    def test_progress_cannot_regress(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING, progress=60)
        with pytest.raises(InvalidTransition):
            store.update(job.id, progress=59)
        assert store.get(job.id).progress == 60

    def test_progress_above_100_rejected(self, store):
        job = store.create("a.xlsx")
        with pytest.raises(InvalidTransition):
            store.update(job.id, progress=101)

    def test_complete_forces_progress_100(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING, progress=80)
        done = store.update(job.id, phase=JobPhase.COMPLETE, result_payload={"file_ref": "x"})
        assert done.progress == 100
        assert done.completed_at == done.last_updated

    @pytest.mark.parametrize("terminal", [JobPhase.COMPLETE, JobPhase.ERROR])
    def test_terminal_jobs_are_frozen(self, store, terminal):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING)
        store.update(job.id, phase=terminal)
        with pytest.raises(InvalidTransition):
            store.update(job.id, message="late write")

    def test_queued_cannot_jump_to_complete(self, store):
        job = store.create("a.xlsx")
        with pytest.raises(InvalidTransition):
            store.update(job.id, phase=JobPhase.COMPLETE)

    def test_payload_only_when_finished(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING)
        with pytest.raises(InvalidTransition):
            store.update(job.id, result_payload={"file_ref": "x"})

    def test_unknown_field_rejected(self, store):
        job = store.create("a.xlsx")
        with pytest.raises(TypeError):
            store.update(job.id, created_at=None)


class TestCancelAndDelete:

    def test_cancel_sets_flag_and_message(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING)
        cancelled = store.request_cancel(job.id)
        assert cancelled.phase == JobPhase.ERROR
        assert cancelled.client_status == ClientStatus.CANCELLED
        assert cancelled.message == CANCELLED_MESSAGE
        assert store.is_cancelled(job.id)

    def test_cancel_finished_job_rejected(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.ERROR, message="boom")
        with pytest.raises(InvalidTransition):
            store.request_cancel(job.id)

    def test_delete_active_job_requires_cancel(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING)
        with pytest.raises(InvalidTransition):
            store.delete(job.id)
        store.request_cancel(job.id)
        store.delete(job.id)
        assert job.id not in store
        with pytest.raises(JobNotFound):
            store.get(job.id)


class TestConcurrency:

    @staticmethod
    def _race(store, job_id, writer_targets, readers=2):
        views: dict[int, list[int]] = {slot: [] for slot in range(readers)}
        stop = threading.Event()

        def reader(slot: int):
            while not stop.is_set():
                views[slot].append(store.get(job_id).progress)

        reader_threads = [threading.Thread(target=reader, args=(slot,)) for slot in views]
        writer_threads = [threading.Thread(target=target) for target in writer_targets]
        for t in reader_threads + writer_threads:
            t.start()
        for t in writer_threads:
            t.join()
        stop.set()
        for t in reader_threads:
            t.join()
        return views

    def test_racing_writers_never_regress_observed_progress(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING)
        accepted: list[int] = []

        def writer(seed: int):
            rng = random.Random(seed)
            for _ in range(300):
                try:
                    accepted.append(store.update(job.id, progress=rng.randint(0, 100)).progress)
                except InvalidTransition:
                    pass

        views = self._race(store, job.id, [lambda s=seed: writer(s) for seed in range(4)])

        for view in views.values():
            assert view == sorted(view)
        assert store.get(job.id).progress == max(accepted)

    def test_sequential_writer_is_observed_in_order(self, store):
        job = store.create("a.xlsx")
        store.update(job.id, phase=JobPhase.RUNNING)

        def writer():
            for value in range(0, 101):
                store.update(job.id, progress=value)

        views = self._race(store, job.id, [writer])

        for view in views.values():
            assert view == sorted(view)
        assert store.get(job.id).progress == 100
