"""
contest_engine/routes/deps.py
Shared route dependencies: orchestrator lookup, caller identity, admin check, rate limiter.
"""
import hmac
from typing import Optional

from fastapi import Header, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from contest_engine.config.feature_flags import get_bool_env
from contest_engine.exceptions import AdminRequiredError
from contest_engine.services.contest_orchestrator import ContestOrchestrator

limiter = Limiter(
    key_func=get_remote_address,
    enabled=get_bool_env("RATE_LIMIT_ENABLED", True),
)


def get_orchestrator(request: Request) -> ContestOrchestrator:
    return request.app.state.orchestrator


def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id", min_length=1, max_length=128)) -> str:
    """Opaque user id asserted by the upstream auth layer."""
    return x_user_id


def get_optional_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id", max_length=128)) -> Optional[str]:
    return x_user_id


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")
) -> None:
    """
    Guard for operator endpoints.

    ADMIN_TOKEN unset disables them entirely.
    """
    expected = request.app.state.orchestrator.settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AdminRequiredError()
