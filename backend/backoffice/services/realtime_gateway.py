"""
backend/backoffice/services/realtime_gateway.py

Purpose:
    Process-local WebSocket connection manager with named rooms. Subscribers
    join market rooms; the broadcast registry queries room occupancy and
    pushes odds payloads through emit_to_room.

Dependencies:
    - fastapi.WebSocket
    - backoffice.config
    - backoffice.utils
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import WebSocket

from backoffice.config import settings
from backoffice.utils import utcnow

logger = logging.getLogger("backoffice.realtime_gateway")


@dataclass
class ManagedConnection:
    connection_id: str
    websocket: WebSocket
    connected_at: datetime
    last_seen_at: datetime
    rooms: set[str] = field(default_factory=set)


class RealtimeGateway:
    def __init__(
        self,
        *,
        max_connections: int,
        heartbeat_seconds: int,
    ) -> None:
        self._max_connections = max(1, int(max_connections))
        self._heartbeat_seconds = max(1, int(heartbeat_seconds))
        self._connections: dict[str, ManagedConnection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False
        self._registry = None
        self._emit_total = 0
        self._send_failures = 0
        self._dropped_connections = 0
        self._last_errors: list[dict[str, Any]] = []

    def attach_registry(self, registry) -> None:
        """Broadcast registry asked to ensure a poller on every subscribe."""
        self._registry = registry

    async def start(self) -> None:
        async with self._lock:
            if self._running:
                return
            self._running = True
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="ws_heartbeat")
            logger.info("Realtime gateway started")

    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
                try:
                    await self._heartbeat_task
                except asyncio.CancelledError:
                    pass
                self._heartbeat_task = None
            self._connections.clear()
            self._rooms.clear()
            logger.info("Realtime gateway stopped")

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        async with self._lock:
            if len(self._connections) >= self._max_connections:
                raise RuntimeError("max_connections_exceeded")
            connection_id = str(uuid.uuid4())
            now = utcnow()
            self._connections[connection_id] = ManagedConnection(
                connection_id=connection_id,
                websocket=websocket,
                connected_at=now,
                last_seen_at=now,
            )
            return connection_id

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return
            for room in conn.rooms:
                self._discard_member(room, connection_id)

    async def touch(self, connection_id: str) -> None:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if conn:
                conn.last_seen_at = utcnow()

    async def join(self, connection_id: str, room: str) -> None:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if not conn:
                raise RuntimeError("connection_not_found")
            conn.rooms.add(room)
            conn.last_seen_at = utcnow()
            self._rooms.setdefault(room, set()).add(connection_id)

    async def leave(self, connection_id: str, room: str) -> None:
        async with self._lock:
            conn = self._connections.get(connection_id)
            if conn:
                conn.rooms.discard(room)
            self._discard_member(room, connection_id)

    def get_room_member_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def on_subscribe(self, connection_id: str, market, room: str) -> None:
        """Join ``room`` and make sure the market has a running poller."""
        await self.join(connection_id, room)
        if self._registry is None:
            logger.warning("Subscribe to %s with no broadcast registry attached", room)
            return
        await self._registry.ensure_broadcast(market, room)

    async def emit_to_room(self, room: str, event_name: str, payload: dict[str, Any]) -> int:
        message = {"type": str(event_name), "data": payload}

        async with self._lock:
            members = [
                self._connections[conn_id]
                for conn_id in self._rooms.get(room, ())
                if conn_id in self._connections
            ]

        delivered = 0
        dead_ids: list[str] = []
        for conn in members:
            try:
                await conn.websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                dead_ids.append(conn.connection_id)
                self._send_failures += 1
                self._append_error(
                    {
                        "ts": utcnow().isoformat(),
                        "connection_id": conn.connection_id,
                        "room": room,
                        "error": str(exc),
                    }
                )

        for conn_id in dead_ids:
            await self.disconnect(conn_id)
            self._dropped_connections += 1

        self._emit_total += 1
        return delivered

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "active_connections": len(self._connections),
            "rooms": {room: len(members) for room, members in self._rooms.items()},
            "max_connections": self._max_connections,
            "heartbeat_seconds": self._heartbeat_seconds,
            "emit_total": self._emit_total,
            "send_failures": self._send_failures,
            "dropped_connections": self._dropped_connections,
            "last_errors": list(self._last_errors),
        }

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._heartbeat_seconds)
            async with self._lock:
                connections = list(self._connections.values())
            dead_ids: list[str] = []
            for conn in connections:
                try:
                    await conn.websocket.send_json({"type": "ping", "data": {"ts": utcnow().isoformat()}})
                except Exception:
                    dead_ids.append(conn.connection_id)
            for conn_id in dead_ids:
                await self.disconnect(conn_id)
                self._dropped_connections += 1

    def _discard_member(self, room: str, connection_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room]

    def _append_error(self, error: dict[str, Any]) -> None:
        self._last_errors.append(error)
        if len(self._last_errors) > 200:
            self._last_errors = self._last_errors[-200:]


realtime_gateway = RealtimeGateway(
    max_connections=settings.WS_MAX_CONNECTIONS,
    heartbeat_seconds=settings.WS_HEARTBEAT_SECONDS,
)
