"""
Admin-only access. Identity is owned elsewhere; this module only answers
"is this caller an administrator?" and rejects everyone else.
"""
import hmac
import logging
from typing import Iterable, Optional, Protocol

from fastapi import Request

from app.core.config import settings
from app.core.errors import Forbidden

logger = logging.getLogger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"


class AdminAuthorizer(Protocol):
    def is_admin(self, caller: Request) -> bool: ...


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


class TokenAdminAuthorizer:
    """Accepts callers presenting one of the configured admin tokens."""

    def __init__(self, tokens: Iterable[str]):
        self._tokens = [t.strip() for t in tokens if t and t.strip()]
        if not self._tokens:
            logger.warning("No ADMIN_API_TOKENS configured: every admin route will answer 403.")

    @classmethod
    def from_settings(cls) -> "TokenAdminAuthorizer":
        return cls(settings.ADMIN_API_TOKENS.split(","))

    def is_admin(self, caller: Request) -> bool:
        presented = caller.headers.get(ADMIN_TOKEN_HEADER) or _bearer_token(caller)
        if not presented:
            return False
        return any(hmac.compare_digest(presented, token) for token in self._tokens)


def require_admin(request: Request) -> None:
    """FastAPI dependency guarding every admin route."""
    authorizer: AdminAuthorizer = request.app.state.authorizer
    if not authorizer.is_admin(request):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected non-admin call to {request.url.path} from {client}")
        raise Forbidden("Administrator access required")
