import re
from typing import Optional

from fastapi import Header, Request

from .errors import UnauthorizedError, ValidationError
from .schemas import AuthContext
from .services.exchange import ExchangeRegistry, ExchangeStreamer
from .services.files import FileLifecycle
from .services.model_resolution import ROLES

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,128}$")
_TRUTHY = {"1", "true", "yes", "on"}


def sanitize_user_id(raw: str) -> Optional[str]:
    candidate = raw.strip()
    if not candidate:
        return None
    if _USER_ID_PATTERN.match(candidate):
        return candidate
    return None


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_safe_mode: Optional[str] = Header(None),
) -> AuthContext:
    """Identity comes from the fronting auth proxy as headers."""
    user_id = sanitize_user_id(x_user_id or "")
    if not user_id:
        raise UnauthorizedError("Missing or invalid user id")
    role = (x_user_role or "adult").strip().lower()
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    safe_mode = (x_safe_mode or "").strip().lower() in _TRUTHY
    return AuthContext(user_id=user_id, role=role, safe_mode=safe_mode)


def get_file_lifecycle(request: Request) -> FileLifecycle:
    return request.app.state.file_lifecycle


def get_exchange_streamer(request: Request) -> ExchangeStreamer:
    return request.app.state.exchange_streamer


def get_exchange_registry(request: Request) -> ExchangeRegistry:
    return request.app.state.exchange_registry
