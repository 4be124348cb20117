# skillswap_meet/client/signaling.py
import asyncio
import json
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

import httpx
import websockets
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from websockets.exceptions import ConnectionClosed

from skillswap_meet.core.config import Settings, settings

logger = logging.getLogger(__name__)

Handler = Callable[[dict], object]


class SignalingClient:
    """
    JSON-over-WebSocket connection to the signaling server.

    Inbound messages are dispatched by ``type`` in arrival order. Each handler
    runs as its own task, so a slow peer link never holds up the others.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 config: Optional[Settings] = None):
        self.config = config or settings
        self.url = url or self.config.SIGNALING_URL
        self.token = token
        self.connection_id: Optional[str] = None

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()
        self._connected = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.connection_id is not None

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def connect(self) -> str:
        """Opens the socket and waits for the server to assign a connection id."""
        url = self.url
        if self.token:
            url = f"{url}?{urlencode({'token': self.token})}"

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.CONNECT_ATTEMPTS),
            wait=wait_exponential(multiplier=1, max=10),
            retry=retry_if_exception_type((OSError, asyncio.TimeoutError)),
            reraise=True
        ):
            with attempt:
                self._ws = await websockets.connect(url)

        self._reader = asyncio.create_task(self._read_loop())
        await self._connected.wait()
        logger.info(f"Connected to {self.url} as {self.connection_id}")
        return self.connection_id

    async def emit(self, event: str, payload: Optional[dict] = None) -> bool:
        if self._ws is None:
            logger.warning(f"Cannot send {event}: not connected")
            return False
        message = {"type": event, **(payload or {})}
        try:
            await self._ws.send(json.dumps(message))
            return True
        except ConnectionClosed as e:
            logger.warning(f"Cannot send {event}: connection closed ({e})")
            return False

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        for task in list(self._tasks):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self.connection_id = None
        self._connected.clear()

    # === Dispatch ===

    def dispatch(self, message: dict) -> None:
        """Schedules the handlers registered for ``message["type"]``."""
        event = message.get("type")
        if event == "connected":
            self.connection_id = message.get("connectionId")
            self._connected.set()
        elif event == "ping":
            return
        elif event == "error":
            logger.warning(f"Server rejected a message: {message.get('detail')}")

        for handler in list(self._handlers.get(event, [])):
            result = handler(message)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._handler_done)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON frame from server")
                    continue
                if isinstance(message, dict):
                    self.dispatch(message)
        except ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            # Unblocks connect() if the server closed before assigning an id
            self._connected.set()

    def _handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Signaling handler failed", exc_info=task.exception())


async def fetch_ice_servers(base_url: Optional[str] = None, config: Optional[Settings] = None) -> List[dict]:
    """Reads the ICE configuration from the server, falling back to the local STUN list."""
    config = config or settings
    base_url = base_url or config.API_URL
    try:
        async with httpx.AsyncClient(timeout=config.HTTPX_TIMEOUT) as client:
            response = await client.get(f"{base_url}/api/webrtc/config")
            response.raise_for_status()
            return response.json()["iceServers"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.warning(f"Could not fetch ICE servers ({e}), using configured STUN servers")
        return config.WEBRTC_CONFIG.get_ice_servers()
