from __future__ import annotations

import hashlib
from typing import List, Optional

from fastapi import Depends, Header, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from src.chartguard.config import Settings
from src.chartguard.context import AppContext, get_app_context
from src.chartguard.domain.models.audit_event import AuditContext

# API key is expected in this header when ENABLE_API_AUTH is true.
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ANONYMOUS_ACTOR = "anonymous"


def _parse_api_keys(settings: Settings) -> List[str]:
    """Return the configured API keys as a normalized list.

    API_KEYS is treated as a comma-separated list. Whitespace is stripped and
    empty entries are ignored.
    """

    if not settings.api_keys:
        return []
    return [key.strip() for key in settings.api_keys.split(",") if key.strip()]


def subject_for_api_key(api_key: str) -> str:
    """Stable, non-reversible identifier for an API key, safe to audit."""

    return "api-key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


async def get_api_subject(
    api_key: Optional[str] = Security(_api_key_header),
    app_context: AppContext = Depends(get_app_context),
) -> Optional[str]:
    """FastAPI dependency for simple API-key based authentication.

    - If ENABLE_API_AUTH is false (default for development/tests), this is a
      no-op and returns None.
    - If ENABLE_API_AUTH is true, a valid API key must be supplied in the
      X-API-Key header and match the configured API_KEYS list.
    """

    settings = app_context.settings
    if not settings.enable_api_auth:
        return None

    allowed_keys = _parse_api_keys(settings)
    if not allowed_keys:
        # Misconfiguration: auth is enabled but no keys are configured.
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is enabled but no API keys are configured.",
        )

    if not api_key or api_key not in allowed_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )

    return subject_for_api_key(api_key)


async def get_request_context(
    request: Request,
    subject: Optional[str] = Depends(get_api_subject),
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-ID"),
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-ID"),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
) -> AuditContext:
    """Build the caller's audit context from request headers.

    The actor is the explicit X-Actor-ID when given, else the hashed API key
    subject, else "anonymous". X-Organization-ID is passed through as is;
    patient-scoped operations refuse a request without one (403).
    """

    actor = (x_actor_id or "").strip() or subject or ANONYMOUS_ACTOR
    return AuditContext(
        actor=actor[:128],
        organization_id=(x_organization_id or "").strip() or None,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent[:256] if user_agent else None,
    )
