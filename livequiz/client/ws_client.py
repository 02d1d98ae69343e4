# client/ws_client.py
# =====================================================================================
# PURPOSE
#   WebSocket transport for the message bus (no UI code) that:
#     - Maintains ONE persistent connection to the bus hub
#     - Auto-reconnects with backoff if the connection drops
#     - Replies to 'ping' with 'pong' (heartbeat)
#     - Re-subscribes every live channel after a reconnect and tells the
#       session layer so it can resync whatever it missed
#
# KEY TECHNOLOGIES
#   - websockets: lightweight WS library for asyncio
#   - asyncio: Queue for outbound frames; tasks for recv/send loops
#
# WIRE FRAMES
#   out: {"op": "subscribe", "channel"} / {"op": "unsubscribe", "channel"}
#        {"op": "publish", "channel", "name", "data"} / {"op": "pong", "ts"}
#   in:  {"op": "message", "channel", "name", "data", "id", "timestamp"}
#        {"op": "ping", "ts"}
# =====================================================================================

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import websockets

from .bus import MessageBus
from .common import logger
from .errors import TransportError


class ConnectionStatus(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


MAX_BACKOFF = 15


class WSClient:
    """Transport-only WebSocket client.

    Parameters
    ----------
    url : str
        Full ws:// or wss:// URL of the bus hub.
        Example: ws://127.0.0.1:49000/bus
    on_event : Callable[[dict], Awaitable[None]]
        Async callback invoked with every non-heartbeat frame from the server.
    on_connect : Callable[[bool], Awaitable[None]] | None
        Async callback invoked after every successful connect; the argument
        is True when this is a reconnect.
    max_retries : int | None
        Consecutive failed attempts before giving up (None = forever).
    """

    def __init__(
        self,
        url: str,
        on_event: Callable[[dict], Awaitable[None]],
        on_connect: Optional[Callable[[bool], Awaitable[None]]] = None,
        max_retries: Optional[int] = None,
    ):
        self.url = url
        self.on_event = on_event
        self.on_connect = on_connect
        self.max_retries = max_retries
        self.send_q: asyncio.Queue[dict] = asyncio.Queue()
        self.status = ConnectionStatus.IDLE
        self.connection_error: Optional[str] = None
        self._connected = asyncio.Event()
        self._ever_connected = False
        self._stop = False

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    async def start(self):
        """Run until stop() is called (or retries are exhausted) and keep a live connection.

        This method:
          - attempts to connect,
          - starts receiver & sender tasks,
          - waits until either finishes,
          - then reconnects with exponential backoff if needed.
        """
        backoff = 1
        failures = 0
        while not self._stop:
            self.status = ConnectionStatus.RECONNECTING if self._ever_connected else ConnectionStatus.CONNECTING
            try:
                async with websockets.connect(
                    self.url,
                    ping_interval=20,  # Send ping every 20 seconds
                    ping_timeout=10,   # Wait 10 seconds for pong response
                    close_timeout=5,   # Wait 5 seconds for close handshake
                    max_size=2**23,    # Larger message size limit (~8MB)
                ) as ws:
                    reconnect = self._ever_connected
                    self._ever_connected = True
                    self.status = ConnectionStatus.CONNECTED
                    self.connection_error = None
                    self._connected.set()
                    backoff = 1
                    failures = 0
                    logger.info(f"[ws] connected to {self.url} (reconnect={reconnect})")

                    sender = asyncio.create_task(self._sender(ws))
                    receiver = asyncio.create_task(self._receiver(ws))
                    pending = set()

                    try:
                        if self.on_connect is not None:
                            await self.on_connect(reconnect)
                        # Wait until either sender or receiver exits
                        done, pending = await asyncio.wait(
                            {sender, receiver},
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                        for task in done:
                            if not task.cancelled() and task.exception() is not None:
                                logger.warning(f"[ws] task failed: {task.exception()}")
                    finally:
                        self._connected.clear()
                        for t in (sender, receiver):
                            t.cancel()
                        await asyncio.gather(sender, receiver, return_exceptions=True)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Connection failed or dropped. Wait a bit (exponential backoff)
                # then try again.
                self._connected.clear()
                failures += 1
                self.connection_error = str(e)
                logger.warning(f"[ws] connection error ({failures}): {e}")
                if self.max_retries is not None and failures >= self.max_retries:
                    self.status = ConnectionStatus.FAILED
                    logger.error(f"[ws] giving up on {self.url} after {failures} attempts")
                    return
                if not self._stop:
                    self.status = ConnectionStatus.RECONNECTING
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, MAX_BACKOFF)
            else:
                if not self._stop:
                    self.status = ConnectionStatus.RECONNECTING

        self.status = ConnectionStatus.CLOSED

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _receiver(self, ws):
        """Receive loop (asyncio Task).

        Reads text frames from the socket, parses JSON, and:
          - if it's a 'ping', immediately sends a 'pong' (heartbeat)
          - else, forwards the frame to on_event(...)
        """
        async for raw in ws:
            try:
                frame = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning(f"[ws] dropping non-JSON frame: {raw!r:.80}")
                continue
            if not isinstance(frame, dict):
                logger.warning(f"[ws] dropping non-object frame: {raw!r:.80}")
                continue

            if frame.get("op") == "ping":
                await ws.send(json.dumps({"op": "pong", "ts": frame.get("ts")}))
                continue

            try:
                await self.on_event(frame)
            except Exception:
                logger.exception("[ws] error processing frame")

    async def _sender(self, ws):
        """Sender loop (asyncio Task).

        Waits for dicts placed on the send queue and writes them
        to the websocket as JSON strings.
        """
        while True:
            payload = await self.send_q.get()
            try:
                await ws.send(json.dumps(payload))
            finally:
                self.send_q.task_done()

    async def send(self, payload: dict):
        """Enqueue an outbound frame. Raises TransportError while disconnected."""
        if not self.is_connected:
            raise TransportError(f"not connected ({self.status.value})")
        await self.send_q.put(payload)

    def send_nowait(self, payload: dict) -> None:
        self.send_q.put_nowait(payload)

    def stop(self):
        """Signal the reconnect loop to exit."""
        self._stop = True


class WSBus(MessageBus):
    """MessageBus over the hub websocket."""

    def __init__(self, url: str, max_retries: Optional[int] = None):
        super().__init__()
        self._client = WSClient(url, self._on_frame, on_connect=self._on_connect, max_retries=max_retries)
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> ConnectionStatus:
        return self._client.status

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    @property
    def reconnecting(self) -> bool:
        return self._client.status == ConnectionStatus.RECONNECTING

    @property
    def connection_error(self) -> Optional[str]:
        return self._client.connection_error

    async def start(self, timeout: float = 5.0) -> bool:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._client.start())
        return await self._client.wait_until_connected(timeout=timeout)

    async def close(self) -> None:
        self._client.stop()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._client.status = ConnectionStatus.CLOSED

    async def publish(self, channel: str, event: str, data: Any = None) -> None:
        await self._client.send({"op": "publish", "channel": channel, "name": event, "data": data})

    async def _on_connect(self, reconnect: bool) -> None:
        for channel in self.channels:
            self._client.send_nowait({"op": "subscribe", "channel": channel})
        if reconnect:
            await self.notify_reconnected()

    async def _on_frame(self, frame: dict) -> None:
        if frame.get("op") != "message":
            logger.debug(f"[ws] ignoring frame op={frame.get('op')}")
            return
        channel = frame.get("channel")
        name = frame.get("name")
        if not isinstance(channel, str) or not isinstance(name, str):
            logger.warning(f"[ws] malformed message frame: {frame}")
            return
        await self.dispatch(channel, name, frame.get("data"),
                            msg_id=frame.get("id"), timestamp=frame.get("timestamp"))

    def _on_channel_added(self, channel: str) -> None:
        if self.is_connected:
            self._client.send_nowait({"op": "subscribe", "channel": channel})

    def _on_channel_removed(self, channel: str) -> None:
        if self.is_connected:
            self._client.send_nowait({"op": "unsubscribe", "channel": channel})
