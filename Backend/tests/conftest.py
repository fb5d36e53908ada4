"""
Shared fixtures: rows, fake enrichment collaborators, an in-memory job store
and a TestClient wired to fast processor settings.
"""
from __future__ import annotations

import asyncio
import os

# Must be set before app.core.config is imported anywhere
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "")

import pytest

from app.core.errors import PermanentEnrichmentError, TransientEnrichmentError
from app.services.enrichment import EnrichedRow
from app.services.job_processor import ProcessorConfig
from app.services.job_store import JobStore
from app.services.sheets import Row, SheetKind
from app.services.storage import LocalStorageProvider

ADMIN_TOKEN = "test-admin-token"

FAST_CONFIG = ProcessorConfig(
    batch_timeout=5.0,
    failure_threshold=3,
    max_retries=0,
    retry_base_delay=0.0,
    retry_max_delay=0.0,
    max_duration=30.0,
    max_batch_concurrency=20,
)


def make_row(index: int, sheet: SheetKind = SheetKind.QROC, **data) -> Row:
    base = {"question": f"Question {index}", "reponse": f"Answer {index}", "explication": ""}
    base.update(data)
    return Row(sheet=sheet, index=index, data=base)


def make_rows(count: int, sheet: SheetKind = SheetKind.QROC) -> list[Row]:
    return [make_row(i, sheet) for i in range(1, count + 1)]


# ─── Fake Enrichers ──────────────────────────────────────────────────────────

class EchoEnricher:
    """Fills the explanation cell; fails permanently for the given row indices."""
    is_configured = True

    def __init__(self, fail_rows: set[int] | None = None, transient_rows: set[int] | None = None):
        self.fail_rows = fail_rows or set()
        self.transient_rows = transient_rows or set()
        self.calls: list[int] = []

    async def enrich(self, row: Row) -> EnrichedRow:
        self.calls.append(row.index)
        await asyncio.sleep(0)
        if row.index in self.fail_rows:
            raise PermanentEnrichmentError(f"Refused row {row.index}")
        if row.index in self.transient_rows:
            raise TransientEnrichmentError(f"Rate limited on row {row.index}")
        data = dict(row.data)
        data["explication"] = f"Explained {row.index}"
        return EnrichedRow(row=Row(sheet=row.sheet, index=row.index, data=data), changed_columns=["explication"])


class DownEnricher:
    """AI service unreachable: every call is a transient failure."""
    is_configured = True

    def __init__(self):
        self.calls = 0

    async def enrich(self, row: Row) -> EnrichedRow:
        self.calls += 1
        await asyncio.sleep(0)
        raise TransientEnrichmentError("APIConnectionError: Connection error.")


class GatedEnricher(EchoEnricher):
    """The first `free_calls` calls pass; later ones wait for `gate`."""

    def __init__(self, free_calls: int):
        super().__init__()
        self.free_calls = free_calls
        self.started = 0
        self.gate = asyncio.Event()

    async def enrich(self, row: Row) -> EnrichedRow:
        self.started += 1
        if self.started > self.free_calls:
            await self.gate.wait()
        return await super().enrich(row)


class SlowEnricher(EchoEnricher):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def enrich(self, row: Row) -> EnrichedRow:
        await asyncio.sleep(self.delay)
        return await super().enrich(row)


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def storage(tmp_path) -> LocalStorageProvider:
    return LocalStorageProvider(str(tmp_path / "results"))


@pytest.fixture
def client(tmp_path, monkeypatch):
    from fastapi.testclient import TestClient

    from app.core.config import settings
    from app.core.security import TokenAdminAuthorizer
    from app.main import app
    from app.services.job_processor import JobProcessor

    monkeypatch.setattr(settings, "DATABASE_URL", "")
    monkeypatch.setattr(settings, "STORAGE_TYPE", "local")
    monkeypatch.setattr(settings, "STORAGE_DIR", str(tmp_path / "results"))

    with TestClient(app, headers={"X-Admin-Token": ADMIN_TOKEN}) as test_client:
        app.state.authorizer = TokenAdminAuthorizer([ADMIN_TOKEN])
        app.state.enricher = EchoEnricher()
        app.state.processor = JobProcessor(
            app.state.job_store, app.state.enricher, app.state.storage, FAST_CONFIG
        )
        yield test_client
