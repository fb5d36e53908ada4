"""
test_progress_poller.py
~~~~~~~~~~~~~~~~~~~~~~~
Caller-side refresh policy and the httpx poller, against a scripted
transport.
"""
from __future__ import annotations

import asyncio

import httpx
import pytest

from app.client.poller import JobChange, ProgressPoller, RefreshPolicy
from app.core.errors import NotReady


def summary(job_id: str, status: str, progress: int = 0, message: str = "") -> dict:
    return {"id": job_id, "status": status, "progress": progress, "message": message}


class ScriptedApi:
    """Serves job lists in sequence; repeats the last one when exhausted."""

    def __init__(self, *pages: list[dict]):
        self.pages = list(pages)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/download"):
            return httpx.Response(409, json={"detail": "Job j1 is processing"})
        page = self.pages[min(self.calls, len(self.pages) - 1)]
        self.calls += 1
        active = sum(1 for j in page if j["status"] in ("queued", "processing"))
        return httpx.Response(200, json={"jobs": page, "stats": {"activeJobs": active}})


def make_poller(api: ScriptedApi, **kwargs) -> tuple[ProgressPoller, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://test")
    return ProgressPoller(client, **kwargs), client


class TestRefreshPolicy:

    def test_polls_only_while_something_is_active(self):
        policy = RefreshPolicy(interval=2.0)
        assert policy.next_delay(["completed", "processing"]) == 2.0
        assert policy.next_delay(["queued"]) == 2.0
        assert policy.next_delay(["completed", "failed", "cancelled"]) is None
        assert policy.next_delay([]) is None


class TestProgressPoller:

    async def test_reports_changes_once(self):
        api = ScriptedApi(
            [summary("j1", "processing", 10)],
            [summary("j1", "processing", 10)],
            [summary("j1", "completed", 100)],
        )
        seen: list[JobChange] = []
        poller, client = make_poller(api, on_change=seen.append)
        async with client:
            first = await poller.refresh()
            second = await poller.refresh()
            third = await poller.refresh()

        assert [c.current["status"] for c in first] == ["processing"]
        assert second == []
        assert third[0].previous["status"] == "processing"
        assert third[0].ready_for_download
        assert third[0].finished
        assert len(seen) == 2

    async def test_progress_change_without_status_change(self):
        api = ScriptedApi([summary("j1", "processing", 10)], [summary("j1", "processing", 40)])
        poller, client = make_poller(api)
        async with client:
            await poller.refresh()
            [change] = await poller.refresh()
        assert not change.status_changed
        assert change.current["progress"] == 40

    async def test_next_delay_follows_activity(self):
        api = ScriptedApi([summary("j1", "processing")], [summary("j1", "failed")])
        poller, client = make_poller(api, policy=RefreshPolicy(interval=1.5))
        async with client:
            assert poller.next_delay() is None
            await poller.refresh()
            assert poller.next_delay() == 1.5
            await poller.refresh()
            assert poller.next_delay() is None
            poller.notify_submitted()
            assert poller.next_delay() == 1.5

    async def test_download_not_ready(self):
        poller, client = make_poller(ScriptedApi([]))
        async with client:
            with pytest.raises(NotReady):
                await poller.download("j1")

    async def test_run_goes_idle_and_wakes_on_submission(self):
        api = ScriptedApi(
            [summary("j1", "processing", 50)],
            [summary("j1", "completed", 100)],
            [summary("j1", "completed", 100), summary("j2", "queued")],
            [summary("j1", "completed", 100), summary("j2", "completed", 100)],
        )
        poller, client = make_poller(api, policy=RefreshPolicy(interval=0.01))
        stop = asyncio.Event()
        async with client:
            task = asyncio.create_task(poller.run(stop))
            while api.calls < 2:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)
            assert api.calls == 2  # idle: nothing active

            poller.notify_submitted()
            while api.calls < 4:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)
            assert api.calls == 4

            stop.set()
            await asyncio.wait_for(task, timeout=1)
