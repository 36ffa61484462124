"""Admission checks run before any upstream work: origin and identity."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from chat_relay.config import ServerSpec

_logger = logging.getLogger(__name__)

USER_HEADER = "x-internal-user-id"
TENANT_HEADER = "x-tenant-id"


class AdmissionError(Exception):
    """Request rejected before any upstream call."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True)
class Identity:
    user_id: str
    tenant_id: str


def effective_origin(origin: str | None, allowed: list[str]) -> str:
    """Origin to echo in CORS headers: the request's if allowed, else the first allowed."""
    if origin and origin in allowed:
        return origin
    return allowed[0] if allowed else ""


def check_origin(origin: str | None, server: ServerSpec) -> str:
    """Validate the declared origin and return the origin to echo.

    A missing or empty origin is admitted (non-browser callers).  An
    unknown origin raises ``AdmissionError`` with status 403.
    """
    allowed = server.effective_origins
    if origin and origin not in allowed:
        _logger.warning("Rejected request from origin %s", origin)
        raise AdmissionError("Origin not allowed.", 403)
    return effective_origin(origin, allowed)


def resolve_identity(headers: Mapping[str, str], server: ServerSpec) -> Identity | None:
    """Resolve ``(user, tenant)`` from headers, or dev defaults outside production."""
    user_id = headers.get(USER_HEADER) or None
    tenant_id = headers.get(TENANT_HEADER) or None
    if not server.is_production:
        user_id = user_id or server.default_user_id
        tenant_id = tenant_id or server.default_tenant_id
    if not user_id or not tenant_id:
        return None
    return Identity(user_id=user_id, tenant_id=tenant_id)


def require_identity(headers: Mapping[str, str], server: ServerSpec) -> Identity:
    identity = resolve_identity(headers, server)
    if identity is None:
        raise AdmissionError("Missing authentication context.", 401)
    return identity
