# skillswap_meet/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from skillswap_meet.api import meetings, signaling
from skillswap_meet.core.config import Settings, settings
from skillswap_meet.core.security import setup_cors
from skillswap_meet.services import SignalingServices

# Logging setup
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Room and presence state lives exactly as long as the process serves
        app.state.signaling = SignalingServices.create(config)
        logger.info("Signaling services started")
        yield
        app.state.signaling.shutdown()

    # === Application ===
    app = FastAPI(
        title="SkillSwap Meet Signaling API",
        description="WebRTC signaling relay and room presence for SkillSwap meetings",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.settings = config

    # === CORS ===
    setup_cors(app, config)

    # === Routers ===
    app.include_router(signaling.ws_router, tags=["signaling"])
    app.include_router(signaling.router, prefix="/api", tags=["webrtc"])
    app.include_router(meetings.router, prefix="/api", tags=["meetings"])

    # === Health Check ===
    @app.get("/health")
    async def health_check(request: Request):
        """Liveness of the signaling services"""
        services = getattr(request.app.state, "signaling", None)
        return {
            "status": "healthy" if services is not None else "starting",
            "services": {"signaling": services is not None}
        }

    # === API status ===
    @app.get("/api/status")
    async def status(request: Request):
        """Get server status"""
        services: SignalingServices = request.app.state.signaling
        return {
            "active_connections": services.registry.connection_count(),
            "active_rooms": services.broker.room_count(),
            "version": app.version
        }

    # === Global error handler ===
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Logs every unhandled exception"""
        logger.error(f"Unhandled exception in {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error. Please try again later."}
        )

    return app


app = create_app()

# === Entrypoint ===
if __name__ == "__main__":
    logger.info(f"Starting server on {settings.HOST}:{settings.PORT}")
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=False
    )
