# skillswap_meet/api/signaling.py
import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect

from skillswap_meet.core.config import Settings
from skillswap_meet.core.security import resolve_websocket_identity
from skillswap_meet.models.signaling import IceServersResponse
from skillswap_meet.services import Connection, SignalingServices

router = APIRouter()
ws_router = APIRouter()
logger = logging.getLogger(__name__)


def get_services(request: Request) -> SignalingServices:
    return request.app.state.signaling


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def _pump_outbox(websocket: WebSocket, connection: Connection):
    """Writes queued messages to the socket in the order they were queued."""
    while True:
        message = await connection.outbox.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Stopped writing to {connection.connection_id}: {e}")
            break


async def _heartbeat(connection: Connection, interval: int):
    """Queues a ping periodically so idle proxies keep the socket open."""
    while True:
        await asyncio.sleep(interval)
        connection.send({"type": "ping"})


@ws_router.websocket("/ws/meet")
async def signaling_endpoint(websocket: WebSocket):
    """
    Meeting signaling channel.
    URL: /ws/meet?token=<identity token>
    """
    identity = await resolve_websocket_identity(websocket)
    if identity is None:
        return

    services: SignalingServices = websocket.app.state.signaling
    config: Settings = websocket.app.state.settings

    await websocket.accept()
    connection_id = services.registry.on_connect(identity)
    connection = services.registry.get(connection_id)
    connection.send({"type": "connected", "connectionId": connection_id})

    writer = asyncio.create_task(_pump_outbox(websocket, connection))
    heartbeat = asyncio.create_task(_heartbeat(connection, config.HEARTBEAT_INTERVAL))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                logger.warning(f"Binary frame from {connection_id}")
                connection.send({"type": "error", "detail": "Binary frames are not supported"})
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Non-JSON frame from {connection_id}")
                connection.send({"type": "error", "detail": "Message must be JSON"})
                continue
            services.gateway.handle(connection_id, data)

    except WebSocketDisconnect:
        logger.info(f"Connection {connection_id} closed by client")
    finally:
        heartbeat.cancel()
        writer.cancel()
        # Exactly once per transport teardown, whatever the cause
        services.gateway.disconnect(connection_id)


@router.get("/webrtc/config", response_model=IceServersResponse)
async def get_webrtc_config(config: Settings = Depends(get_settings)):
    """
    Returns the ICE configuration (STUN servers) for the clients.
    """
    return {"iceServers": config.WEBRTC_CONFIG.get_ice_servers()}


@router.get("/webrtc/status")
async def get_webrtc_status(services: SignalingServices = Depends(get_services)):
    """
    Current signaling statistics.
    """
    return {
        "status": "active",
        "rooms": services.broker.room_count(),
        "members": services.broker.member_count(),
        "connections": services.registry.connection_count(),
        "identities": services.registry.identity_count(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
