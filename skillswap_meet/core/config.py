# skillswap_meet/core/config.py
import logging
import re
from typing import List, Optional, Union

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Room ids, connection ids and identities share one alphabet
VALID_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def is_valid_id(value: Optional[str]) -> bool:
    """Checks whether a string is an acceptable room/connection id."""
    return bool(value and VALID_ID_PATTERN.match(value))


class IceServer(BaseModel):
    """One RTCIceServer entry as browsers and aiortc accept it."""
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class WebRTCConfig(BaseModel):
    """ICE server configuration handed to clients"""
    stun_servers: List[str] = ["stun:stun.l.google.com:19302"]
    turn_servers: List[str] = []
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None

    def relay_server(self) -> Optional[IceServer]:
        if not self.turn_servers:
            return None
        if not (self.turn_username and self.turn_credential):
            logger.warning("TURN servers configured without credentials, serving STUN only")
            return None
        return IceServer(urls=self.turn_servers, username=self.turn_username, credential=self.turn_credential)

    def get_ice_servers(self) -> List[dict]:
        servers = [IceServer(urls=url) for url in self.stun_servers]
        relay = self.relay_server()
        if relay is not None:
            servers.append(relay)
        return [server.model_dump(exclude_none=True) for server in servers]


class Settings(BaseSettings):
    """
    Application settings.
    Every value can be overridden through environment variables or a .env file.
    """

    # --- Server ---
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # --- CORS ---
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"
    ALLOW_CREDENTIALS: bool = True

    # --- Authentication ---
    AUTH_SECRET: str = "change-me"
    TOKEN_COOKIE_NAME: str = "authToken"
    TOKEN_TTL_SECONDS: int = 7 * 24 * 3600

    # --- Signaling ---
    HEARTBEAT_INTERVAL: int = 30  # seconds
    REBROADCAST_DUPLICATE_JOINS: bool = True

    # --- WebRTC ---
    WEBRTC_CONFIG: WebRTCConfig = WebRTCConfig()

    # --- Client ---
    SIGNALING_URL: str = "ws://localhost:8000/ws/meet"
    API_URL: str = "http://localhost:8000"
    CONNECT_ATTEMPTS: int = 3
    HTTPX_TIMEOUT: int = 5

    # --- Local capture devices (ffmpeg input names) ---
    CAMERA_DEVICE: str = "/dev/video0"
    CAMERA_FORMAT: str = "v4l2"
    MICROPHONE_DEVICE: str = "default"
    MICROPHONE_FORMAT: str = "pulse"
    SCREEN_DEVICE: str = ":0.0"
    SCREEN_FORMAT: str = "x11grab"
    VIDEO_SIZE: str = "640x480"
    FRAMERATE: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    # --- Validators ---
    @field_validator("AUTH_SECRET", mode="before")
    @classmethod
    def validate_secret(cls, v):
        if not v:
            raise ValueError("AUTH_SECRET cannot be empty")
        return v

    @field_validator("HEARTBEAT_INTERVAL", "CONNECT_ATTEMPTS")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def validate_origins(cls, v):
        if isinstance(v, str):
            origins = [origin.strip() for origin in v.split(",") if origin.strip()]
            if not origins:
                raise ValueError("ALLOWED_ORIGINS cannot be empty")
            if "*" in origins:
                logger.warning("ALLOWED_ORIGINS='*' allows every origin. Do not use this in production!")
        return v


# --- Shared settings instance ---
settings = Settings()


# --- Helpers ---
def get_allowed_origins(config: Optional[Settings] = None) -> List[str]:
    """Returns the list of allowed CORS origins."""
    raw = (config or settings).ALLOWED_ORIGINS
    if raw == "*":
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]
