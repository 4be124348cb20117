# skillswap_meet/core/security.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Settings, get_allowed_origins, settings

logger = logging.getLogger(__name__)


class InvalidTokenError(Exception):
    """Raised when an identity token is malformed, forged or expired."""


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.debug(f"Incoming request: {request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"Response: {response.status_code}")
        return response


def setup_cors(app: FastAPI, config: Optional[Settings] = None):
    """Configures CORS for the application"""
    config = config or settings
    origins = get_allowed_origins(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=config.ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"]
    )

    app.add_middleware(LoggingMiddleware)


# === Identity tokens ===

TOKEN_ALGORITHM = "HS256"
# Claims an issuing auth service may carry the user id in, first match wins
IDENTITY_CLAIMS = ("sub", "id", "userId", "_id")


def issue_token(identity: str, ttl_seconds: Optional[int] = None, secret: Optional[str] = None) -> str:
    """Issues an HS256 JWT with the identity in ``sub`` and an ``exp`` claim."""
    if not identity:
        raise ValueError("identity cannot be empty")
    ttl = settings.TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    now = datetime.now(tz=timezone.utc)
    payload = {"sub": identity, "iat": now, "exp": now + timedelta(seconds=ttl)}
    return jwt.encode(payload, secret or settings.AUTH_SECRET, algorithm=TOKEN_ALGORITHM)


def verify_token(token: str, secret: Optional[str] = None) -> str:
    """Validates a JWT and returns the ParticipantIdentity it carries."""
    if not isinstance(token, str) or not token:
        raise InvalidTokenError("Malformed token")
    try:
        claims = jwt.decode(
            token,
            secret or settings.AUTH_SECRET,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["exp"], "verify_sub": False},
        )
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("Token expired")
    except jwt.PyJWTError as e:
        raise InvalidTokenError(f"Invalid token: {e}")

    for claim in IDENTITY_CLAIMS:
        identity = claims.get(claim)
        if identity not in (None, ""):
            return str(identity)
    raise InvalidTokenError("Empty identity")


def _app_settings(connection) -> Settings:
    return getattr(connection.app.state, "settings", settings)


def _extract_token(query_token: Optional[str], auth_header: Optional[str], cookie: Optional[str]) -> Optional[str]:
    if query_token:
        return query_token
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip()
    return cookie


async def resolve_websocket_identity(websocket: WebSocket) -> Optional[str]:
    """
    Resolves the identity of a WebSocket before it is accepted.
    Closes the socket with a policy violation and returns None on failure.
    """
    config = _app_settings(websocket)
    token = _extract_token(
        websocket.query_params.get("token"),
        websocket.headers.get("Authorization"),
        websocket.cookies.get(config.TOKEN_COOKIE_NAME),
    )
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        return verify_token(token, config.AUTH_SECRET)
    except InvalidTokenError as e:
        logger.info(f"Rejected signaling connection: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


bearer_scheme = HTTPBearer(auto_error=False)


async def require_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency returning the caller's identity or answering 401."""
    config = _app_settings(request)
    token = credentials.credentials if credentials else request.cookies.get(config.TOKEN_COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return verify_token(token, config.AUTH_SECRET)
    except InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))
