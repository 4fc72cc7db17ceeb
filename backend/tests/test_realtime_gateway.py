"""
backend/tests/test_realtime_gateway.py

Purpose:
    Unit tests for the realtime gateway: rooms, member counts, emit delivery,
    dead-socket cleanup, and subscribe-driven broadcast registration.
"""

from __future__ import annotations

import asyncio

import pytest

from backoffice.services.realtime_gateway import RealtimeGateway


class _FakeWebSocket:
    def __init__(self, *, fail_send: bool = False):
        self.accepted = False
        self.fail_send = fail_send
        self.messages: list[dict] = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        if self.fail_send:
            raise RuntimeError("send failed")
        self.messages.append(payload)


class _RecordingRegistry:
    def __init__(self):
        self.calls: list[tuple] = []

    async def ensure_broadcast(self, market, room=None):
        self.calls.append((market, room))
        return True


@pytest.mark.asyncio
async def test_join_leave_updates_member_count():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=30)
    a = await gateway.connect(_FakeWebSocket())
    b = await gateway.connect(_FakeWebSocket())

    await gateway.join(a, "market:m1")
    await gateway.join(b, "market:m1")
    assert gateway.get_room_member_count("market:m1") == 2

    await gateway.leave(a, "market:m1")
    assert gateway.get_room_member_count("market:m1") == 1

    await gateway.disconnect(b)
    assert gateway.get_room_member_count("market:m1") == 0
    assert "market:m1" not in gateway.stats()["rooms"]


@pytest.mark.asyncio
async def test_unknown_room_has_no_members():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=30)
    assert gateway.get_room_member_count("market:nope") == 0


@pytest.mark.asyncio
async def test_join_unknown_connection_raises():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=30)
    with pytest.raises(RuntimeError, match="connection_not_found"):
        await gateway.join("missing", "market:m1")


@pytest.mark.asyncio
async def test_connect_over_capacity_raises():
    gateway = RealtimeGateway(max_connections=1, heartbeat_seconds=30)
    await gateway.connect(_FakeWebSocket())
    ws = _FakeWebSocket()
    with pytest.raises(RuntimeError, match="max_connections_exceeded"):
        await gateway.connect(ws)
    assert ws.accepted


@pytest.mark.asyncio
async def test_emit_reaches_room_members_only():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=30)
    in_room, outside = _FakeWebSocket(), _FakeWebSocket()
    conn_in = await gateway.connect(in_room)
    await gateway.connect(outside)
    await gateway.join(conn_in, "market:m1")

    delivered = await gateway.emit_to_room("market:m1", "market:data:m1", {"runners": []})

    assert delivered == 1
    assert in_room.messages == [{"type": "market:data:m1", "data": {"runners": []}}]
    assert outside.messages == []


@pytest.mark.asyncio
async def test_emit_drops_dead_connections():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=30)
    ok = await gateway.connect(_FakeWebSocket())
    dead = await gateway.connect(_FakeWebSocket(fail_send=True))
    await gateway.join(ok, "market:m1")
    await gateway.join(dead, "market:m1")

    delivered = await gateway.emit_to_room("market:m1", "market:data:m1", {})

    assert delivered == 1
    assert gateway.get_room_member_count("market:m1") == 1
    stats = gateway.stats()
    assert stats["send_failures"] == 1
    assert stats["dropped_connections"] == 1
    assert stats["last_errors"][0]["room"] == "market:m1"


@pytest.mark.asyncio
async def test_on_subscribe_joins_then_ensures_broadcast():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=30)
    registry = _RecordingRegistry()
    gateway.attach_registry(registry)
    conn = await gateway.connect(_FakeWebSocket())

    await gateway.on_subscribe(conn, "market-ref", "market:m1")

    assert gateway.get_room_member_count("market:m1") == 1
    assert registry.calls == [("market-ref", "market:m1")]


@pytest.mark.asyncio
async def test_heartbeat_removes_dead_connections():
    gateway = RealtimeGateway(max_connections=10, heartbeat_seconds=1)
    await gateway.connect(_FakeWebSocket())
    await gateway.connect(_FakeWebSocket(fail_send=True))
    await gateway.start()
    await asyncio.sleep(1.3)
    await gateway.stop()
    assert gateway.stats()["dropped_connections"] >= 1
