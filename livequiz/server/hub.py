# server/hub.py
"""
Websocket pub/sub hub bridged onto an in-process LocalBus.

Every connected client gets its own outbound queue and sender task, so a
slow socket never holds up the publisher or the other subscribers. The
REST handlers in app.py publish straight onto `hub.bus`; clients publish
through `{"op": "publish"}` frames and receive `{"op": "message"}` frames
for every channel they subscribed to.

Frames (JSON text):
  in:  subscribe / unsubscribe {channel}, publish {channel, name, data}, pong {ts}
  out: message {channel, name, data, id, timestamp}, ping {ts}, error {message}
"""
from __future__ import annotations

import asyncio
import itertools
import json
import time
from typing import Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from livequiz.client.bus import BusMessage, LocalBus, Subscription
from livequiz.client.common import Events, logger
from livequiz.client.errors import TransportError


class HubConnection:
    """One websocket client of the hub and the channels it listens on."""

    _ids = itertools.count(1)

    def __init__(self, hub: "BusHub", ws: WebSocket):
        self.hub = hub
        self.ws = ws
        self.id = next(self._ids)
        self.queue: asyncio.Queue[Optional[dict]] = asyncio.Queue()
        self.subscriptions: Dict[str, Subscription] = {}
        self.last_pong: Optional[float] = None
        self.latency_ms: Optional[float] = None

    def subscribe(self, channel: str) -> None:
        if channel in self.subscriptions:
            return
        self.subscriptions[channel] = self.hub.bus.subscribe(channel, Events.ALL_EVENTS, self._forward)
        logger.debug(f"[hub] conn={self.id} subscribed {channel}")

    def unsubscribe(self, channel: str) -> None:
        sub = self.subscriptions.pop(channel, None)
        if sub is not None:
            sub.release()
            logger.debug(f"[hub] conn={self.id} unsubscribed {channel}")

    def release_all(self) -> None:
        for channel in list(self.subscriptions):
            self.unsubscribe(channel)

    def _forward(self, msg: BusMessage) -> None:
        self.queue.put_nowait({
            "op": "message",
            "channel": msg.channel,
            "name": msg.name,
            "data": msg.data,
            "id": msg.id,
            "timestamp": msg.timestamp,
        })

    async def sender(self) -> None:
        while True:
            frame = await self.queue.get()
            if frame is None:
                return
            await self.ws.send_text(json.dumps(frame))

    async def handle(self, frame: dict) -> None:
        op = frame.get("op")
        channel = frame.get("channel")

        if op == "pong":
            now = time.time()
            self.last_pong = now
            ts = frame.get("ts")
            if isinstance(ts, (int, float)):
                self.latency_ms = (now - ts) * 500  # half the round trip, in ms
            return

        if not isinstance(channel, str) or not channel:
            self.queue.put_nowait({"op": "error", "message": f"missing channel for op={op}"})
            return

        if op == "subscribe":
            self.subscribe(channel)
        elif op == "unsubscribe":
            self.unsubscribe(channel)
        elif op == "publish":
            name = frame.get("name")
            if not isinstance(name, str) or not name:
                self.queue.put_nowait({"op": "error", "message": "publish needs a name"})
                return
            await self.hub.bus.publish(channel, name, frame.get("data"))
        else:
            self.queue.put_nowait({"op": "error", "message": f"Unknown op: {op}"})


class BusHub:
    """Owns the server-side bus and the websocket clients bridged onto it."""

    def __init__(self, bus: Optional[LocalBus] = None):
        self.bus = bus or LocalBus()
        self.connections: Dict[int, HubConnection] = {}

    async def publish(self, channel: str, name: str, data=None) -> Optional[int]:
        """Publish from server code. A closed bus is logged, not raised."""
        try:
            return await self.bus.publish(channel, name, data)
        except TransportError as e:
            logger.warning(f"[hub] publish {channel}:{name} failed: {e}")
            return None

    async def serve(self, ws: WebSocket) -> None:
        """Run one websocket client until it disconnects."""
        await ws.accept()
        conn = HubConnection(self, ws)
        self.connections[conn.id] = conn
        sender = asyncio.create_task(conn.sender())
        logger.debug(f"[hub] conn={conn.id} connected from {ws.client}")
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    conn.queue.put_nowait({"op": "error", "message": "frames must be JSON"})
                    continue
                if not isinstance(frame, dict):
                    conn.queue.put_nowait({"op": "error", "message": "frames must be JSON objects"})
                    continue
                await conn.handle(frame)
        except WebSocketDisconnect:
            logger.debug(f"[hub] conn={conn.id} disconnected")
        finally:
            conn.release_all()
            self.connections.pop(conn.id, None)
            conn.queue.put_nowait(None)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

    def ping_all(self) -> int:
        """Queue an application-level ping to every client; returns how many."""
        now = time.time()
        for conn in list(self.connections.values()):
            conn.queue.put_nowait({"op": "ping", "ts": now})
        return len(self.connections)
