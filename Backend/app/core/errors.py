"""
errors.py
~~~~~~~~~
Exception taxonomy shared by the validator, the job store, the job processor
and the API layer. main.py maps each class to an HTTP status.
"""
from __future__ import annotations


class ValidationSchemaError(ValueError):
    """The uploaded workbook contains sheets that are not a recognised kind."""

    def __init__(self, message: str, sheets: list[str] | None = None):
        super().__init__(message)
        self.sheets = sheets or []


class FileParseError(ValueError):
    """The uploaded file could not be read as a spreadsheet."""


class JobNotFound(KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job {self.job_id} not found"


class InvalidTransition(RuntimeError):
    """Illegal Job Store mutation (terminal job, progress regression, deleting an active job)."""


class NotReady(RuntimeError):
    """The job result cannot be downloaded yet."""


class Forbidden(PermissionError):
    """Caller is not an administrator."""


class SessionNotFound(KeyError):
    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Validation session {self.session_id} not found or expired"


class EnrichmentError(RuntimeError):
    """Base class for failures of the enrichment collaborator."""


class TransientEnrichmentError(EnrichmentError):
    """Retryable: rate limits, timeouts, connection drops, 5xx."""


class PermanentEnrichmentError(EnrichmentError):
    """Not retryable: the row is passed through unmodified."""


class JobTimedOut(TimeoutError):
    """The job exceeded its wall-clock budget or stopped reporting progress."""
