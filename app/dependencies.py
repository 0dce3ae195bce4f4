"""
Common Dependencies
===================

Shared dependencies used across the application.

Callers authenticate one of two ways:
- service callers (backend jobs, admin tooling) send ``X-Service-Key``
- end users send a bearer JWT and may only act on their own user id
"""

from dataclasses import dataclass
import logging
from typing import Annotated, Optional
import uuid

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes, ForbiddenError
from app.core.security import decode_token, secret_matches
from app.db.session import get_session_factory
from app.services.engine import EntitlementEngine

logger = logging.getLogger(__name__)

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    """The authenticated principal behind a request."""

    is_service: bool
    user_id: Optional[uuid.UUID] = None

    @property
    def label(self) -> str:
        return "service" if self.is_service else f"user:{self.user_id}"

    def ensure_can_act_for(self, user_id: uuid.UUID) -> None:
        """End users may only read or write their own entitlements."""
        if self.is_service:
            return
        if self.user_id != user_id:
            raise ForbiddenError(message="Cannot act on behalf of another user")


async def get_caller(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    service_key: Annotated[Optional[str], Header(alias="X-Service-Key")] = None,
) -> Caller:
    """
    Resolve the caller from the service key or the bearer token.

    Raises 401 if neither is valid.
    In development with DEV_AUTH_DISABLED=True, every caller is a service.
    """
    if settings.auth_disabled:
        return Caller(is_service=True)

    if service_key is not None:
        if secret_matches(service_key, settings.SERVICE_API_KEY):
            return Caller(is_service=True)
        logger.warning("Rejected request with invalid service key on %s", request.url.path)
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid service key",
        )

    if credentials is None:
        raise AuthenticationError(message="Not authenticated")

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
        )

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
        )

    # Picked up by the New Relic middleware
    request.state.user_id = user_id
    return Caller(is_service=False, user_id=user_id)


async def require_service(
    caller: Annotated[Caller, Depends(get_caller)],
) -> Caller:
    """Admin operations are restricted to service callers."""
    if not caller.is_service:
        raise ForbiddenError(message="Service credentials required")
    return caller


_engine: Optional[EntitlementEngine] = None


def get_engine() -> EntitlementEngine:
    """Process-wide entitlement engine bound to the application database."""
    global _engine

    if _engine is None:
        _engine = EntitlementEngine(get_session_factory(), settings)
    return _engine


def reset_engine() -> None:
    """Drop the cached engine (on shutdown)."""
    global _engine
    _engine = None


# Type aliases for dependencies
CurrentCaller = Annotated[Caller, Depends(get_caller)]
ServiceCaller = Annotated[Caller, Depends(require_service)]
Engine = Annotated[EntitlementEngine, Depends(get_engine)]
