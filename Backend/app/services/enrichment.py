from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from jinja2 import Environment, FileSystemLoader
from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncAzureOpenAI,
    InternalServerError,
    RateLimitError,
)

from app.core.config import settings
from app.core.errors import PermanentEnrichmentError, TransientEnrichmentError
from app.services.row_validator import invalid_qcm_letters
from app.services.sheets import QCM_KINDS, Row, is_blank, option_columns, resolve_column

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Jinja2 Template Environment ─────────────────────────────────────────────
TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates", "prompts")
_jinja_env = Environment(loader=FileSystemLoader(TEMPLATE_DIR), trim_blocks=True, lstrip_blocks=True)

# ─── Constants ───────────────────────────────────────────────────────────────
MAX_TOKENS: int       = 600
TEMPERATURE: float    = 0.2
DEFAULT_ANSWER_COLUMN: str      = "reponse"
DEFAULT_EXPLANATION_COLUMN: str = "explication"

# Errors that are transient and worth retrying
_TRANSIENT_EXCEPTIONS: tuple[type[Exception], ...] = (
    RateLimitError,
    APIConnectionError,      # includes APITimeoutError
    InternalServerError,
)


# ─── Contract ────────────────────────────────────────────────────────────────
@dataclass
class EnrichedRow:
    """
    Result of one enrichment call.

    Attributes:
        row:              The row with corrected answer/explanation cells.
        changed_columns:  Headers whose value differs from the source row.
        response_time_ms: How long the call took.
    """
    row: Row
    changed_columns: list[str] = field(default_factory=list)
    response_time_ms: float = 0.0


class Enricher(Protocol):
    """`enrich(Row) -> EnrichedRow`, raising Transient/PermanentEnrichmentError."""

    async def enrich(self, row: Row) -> EnrichedRow: ...


# ─── Prompt Builder ──────────────────────────────────────────────────────────
def build_prompt(row: Row) -> tuple[str, str]:
    """Render the system and user prompts for one row."""
    is_qcm = row.sheet in QCM_KINDS
    system_prompt = _jinja_env.get_template("enrich_system.txt").render(is_qcm=is_qcm)
    user_prompt = _jinja_env.get_template("enrich_user.txt").render(
        sheet=row.sheet.value,
        is_qcm=is_qcm,
        question=row.value("question") or "",
        options=[(letter, row.data[header]) for letter, header in option_columns(row.data)] if is_qcm else [],
        case_text=row.value("case"),
        answer=row.value("answer"),
        explanation=row.value("explanation"),
    )
    return system_prompt, user_prompt


# ─── Response Handling ───────────────────────────────────────────────────────
def parse_response(row: Row, content: str | None) -> EnrichedRow:
    """
    Merge the model's JSON answer into a copy of the row. Every source column
    is kept; only the answer and explanation cells are overwritten.

    Raises:
        PermanentEnrichmentError: empty/malformed JSON or an invalid QCM answer.
    """
    if not content or not content.strip():
        raise PermanentEnrichmentError("Model returned an empty response")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise PermanentEnrichmentError(f"Model returned malformed JSON: {e}")
    if not isinstance(payload, dict):
        raise PermanentEnrichmentError("Model response is not a JSON object")

    answer = payload.get("answer")
    explanation = payload.get("explanation")

    if row.sheet in QCM_KINDS and not is_blank(answer):
        bad = invalid_qcm_letters(answer)
        if bad:
            raise PermanentEnrichmentError(f"Model returned an invalid QCM answer '{answer}'")

    data: dict[str, Any] = dict(row.data)
    changed: list[str] = []
    for field_name, default_header, value in (
        ("answer", DEFAULT_ANSWER_COLUMN, answer),
        ("explanation", DEFAULT_EXPLANATION_COLUMN, explanation),
    ):
        if is_blank(value):
            continue
        header = resolve_column(data, field_name) or default_header
        new_value = str(value).strip()
        if data.get(header) != new_value:
            data[header] = new_value
            changed.append(header)

    return EnrichedRow(row=Row(sheet=row.sheet, index=row.index, data=data), changed_columns=changed)


# ─── Azure OpenAI Client ─────────────────────────────────────────────────────
class AzureEnrichmentClient:
    """
    Enrichment collaborator backed by an Azure OpenAI chat deployment.

    Retries are NOT done here: the job processor owns the retry budget so that
    transient failures count toward its failure threshold.
    """

    def __init__(
        self,
        client: AsyncAzureOpenAI | None = None,
        deployment: str = settings.AZURE_OPENAI_DEPLOYMENT,
        call_timeout: float = settings.AI_CALL_TIMEOUT_SECONDS,
    ):
        if client is None and settings.AZURE_OPENAI_ENDPOINT and settings.AZURE_OPENAI_API_KEY:
            client = AsyncAzureOpenAI(
                azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
                api_key=settings.AZURE_OPENAI_API_KEY,
                api_version=settings.AZURE_OPENAI_API_VERSION,
                max_retries=0,
            )
        self.client = client
        self.deployment = deployment
        self.call_timeout = call_timeout

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def enrich(self, row: Row) -> EnrichedRow:
        if self.client is None:
            raise PermanentEnrichmentError("Azure OpenAI is not configured")

        system_prompt, user_prompt = build_prompt(row)
        start_time = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.deployment,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user",   "content": user_prompt},
                    ],
                    max_tokens=MAX_TOKENS,
                    temperature=TEMPERATURE,
                    response_format={"type": "json_object"},
                ),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientEnrichmentError(f"Azure OpenAI call timed out after {self.call_timeout:.0f}s")
        except _TRANSIENT_EXCEPTIONS as e:
            raise TransientEnrichmentError(f"{type(e).__name__}: {e}")
        except APIStatusError as e:
            # Auth, permission, bad request, content filter: retrying won't help
            logger.error("Azure OpenAI rejected row %s/%d: %s", row.sheet.value, row.index, e)
            raise PermanentEnrichmentError(f"{type(e).__name__}: {e}")

        if not response.choices:
            raise PermanentEnrichmentError("Model returned a response with no choices")

        enriched = parse_response(row, response.choices[0].message.content)
        enriched.response_time_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            "Row %s/%d enriched in %.0f ms (changed: %s)",
            row.sheet.value, row.index, enriched.response_time_ms, enriched.changed_columns,
        )
        return enriched
