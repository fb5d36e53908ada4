import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from app.core.errors import SessionNotFound
from app.services.row_validator import ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class ValidationSession:
    id: str
    file_name: str
    result: ValidationResult
    created_at: float = field(default_factory=time.time)


class ValidationSessionStore:
    """
    Keeps recent validation results so exports can reference a session id
    instead of re-posting every row. Entries expire after `ttl_seconds`.
    """

    def __init__(self, ttl_seconds: int = 3600, clock=time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, ValidationSession] = {}
        self._lock = threading.Lock()

    def save(self, file_name: str, result: ValidationResult) -> ValidationSession:
        session = ValidationSession(
            id=str(uuid.uuid4()), file_name=file_name, result=result, created_at=self._clock()
        )
        with self._lock:
            self._evict_expired()
            self._sessions[session.id] = session
        logger.info(f"Validation session {session.id} stored for {file_name}.")
        return session

    def get(self, session_id: str) -> ValidationSession:
        with self._lock:
            self._evict_expired()
            session: Optional[ValidationSession] = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _evict_expired(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        expired = [sid for sid, s in self._sessions.items() if s.created_at < cutoff]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info(f"Evicted {len(expired)} expired validation session(s).")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
