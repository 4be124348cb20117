# skillswap_meet/core/__init__.py
from .config import settings, get_allowed_origins, is_valid_id, Settings, WebRTCConfig
from .security import (
    InvalidTokenError,
    issue_token,
    verify_token,
    require_identity,
    resolve_websocket_identity,
    setup_cors,
)

__all__ = [
    "settings",
    "get_allowed_origins",
    "is_valid_id",
    "Settings",
    "WebRTCConfig",
    "InvalidTokenError",
    "issue_token",
    "verify_token",
    "require_identity",
    "resolve_websocket_identity",
    "setup_cors",
]
