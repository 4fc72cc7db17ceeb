import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backoffice.services.event_market_service import load_market_ref
from backoffice.services.market_broadcast import room_for_market
from backoffice.services.realtime_gateway import realtime_gateway

logger = logging.getLogger("backoffice.ws")

router = APIRouter()


def _market_id_from_payload(payload: Any) -> str | None:
    """Market id from ``{"id": ...}``. Category and feed come from the stored market, never the client."""
    if not isinstance(payload, dict):
        return None
    market_id = str(payload.get("id") or "").strip()
    return market_id or None


async def _handle_command(connection_id: str, raw: str) -> dict[str, Any] | None:
    if raw == "ping":
        return {"type": "pong"}
    try:
        command = json.loads(raw)
    except json.JSONDecodeError:
        return {"type": "error", "data": {"detail": "invalid_json"}}
    if not isinstance(command, dict):
        return {"type": "error", "data": {"detail": "invalid_command"}}

    command_type = command.get("type")
    if command_type == "subscribe":
        market_id = _market_id_from_payload(command.get("market"))
        market = await load_market_ref(market_id) if market_id else None
        if market is None:
            return {"type": "error", "data": {"detail": "invalid_market"}}
        room = room_for_market(market.id)
        await realtime_gateway.on_subscribe(connection_id, market, room)
        return {"type": "subscribed", "data": {"market_id": market.id, "room": room}}

    if command_type == "unsubscribe":
        market_id = str(command.get("market_id") or "").strip()
        if not market_id:
            return {"type": "error", "data": {"detail": "invalid_market"}}
        # The poller itself is retired by the next sweep once the room is empty.
        await realtime_gateway.leave(connection_id, room_for_market(market_id))
        return {"type": "unsubscribed", "data": {"market_id": market_id}}

    if command_type == "ping":
        await realtime_gateway.touch(connection_id)
        return {"type": "pong"}

    return {"type": "error", "data": {"detail": "unsupported_command"}}


@router.websocket("/io/market")
async def websocket_market(ws: WebSocket):
    try:
        connection_id = await realtime_gateway.connect(ws)
    except RuntimeError:
        await ws.close(code=4002, reason="Too many connections")
        return

    try:
        while True:
            raw = await ws.receive_text()
            reply = await _handle_command(connection_id, raw)
            if reply is not None:
                await ws.send_json(reply)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.warning("WS market connection %s failed", connection_id, exc_info=True)
    finally:
        await realtime_gateway.disconnect(connection_id)
