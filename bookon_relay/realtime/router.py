"""
Realtime websocket endpoint.

Client messages:
- authenticate: {"type": "authenticate", "token": "<jwt>"}
- join_room:    {"type": "join_room", "room_id": "<venue id>"}
- leave_room:   {"type": "leave_room", "room_id": "<venue id>"}
- ping:         keep-alive, answered with a heartbeat

A token may also be passed as ?token= on connect.
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from bookon_relay.realtime.events import EventType, InboundMessage, InboundMessageType
from bookon_relay.utils.logging import correlation_scope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_websocket(websocket: WebSocket):
    await websocket.accept()
    manager = websocket.app.state.connection_manager

    connection_id = await manager.register(websocket)
    with correlation_scope(connection_id):
        await manager.send_event(connection_id, EventType.CONNECTION_ACK, {"connection_id": connection_id})

        token = websocket.query_params.get("token")
        if token:
            await _authenticate(manager, connection_id, token)

        try:
            while True:
                raw = await websocket.receive_text()
                await handle_client_message(manager, connection_id, raw)
        except WebSocketDisconnect:
            logger.debug("Websocket closed by client", extra={"connection_id": connection_id})
        except Exception as exc:
            logger.warning("Websocket error: %s", str(exc), extra={"connection_id": connection_id})
        finally:
            await manager.disconnect(connection_id)


async def handle_client_message(manager, connection_id: str, raw: str) -> None:
    """Process one inbound frame. Protocol errors are reported to the client, never raised."""
    try:
        message = InboundMessage(**json.loads(raw))
    except (json.JSONDecodeError, TypeError, ValidationError) as e:
        logger.info("Invalid websocket message: %s", str(e)[:200], extra={"connection_id": connection_id})
        await manager.send_event(connection_id, EventType.ERROR, {"error": "invalid_message"})
        return

    if message.type == InboundMessageType.AUTHENTICATE:
        await _authenticate(manager, connection_id, message.token or "")

    elif message.type == InboundMessageType.JOIN_ROOM:
        if not message.room_id:
            await manager.send_event(connection_id, EventType.ROOM_JOIN_FAILED, {"error": "room_id required"})
            return
        if await manager.join_room(connection_id, message.room_id):
            await manager.send_event(connection_id, EventType.ROOM_JOINED, {"room_id": message.room_id})
        else:
            await manager.send_event(
                connection_id, EventType.ROOM_JOIN_FAILED,
                {"room_id": message.room_id, "error": "Access denied"},
            )

    elif message.type == InboundMessageType.LEAVE_ROOM:
        if message.room_id and await manager.leave_room(connection_id, message.room_id):
            await manager.send_event(connection_id, EventType.ROOM_LEFT, {"room_id": message.room_id})

    elif message.type == InboundMessageType.PING:
        await manager.send_event(connection_id, EventType.HEARTBEAT, {"status": "alive"})


async def _authenticate(manager, connection_id: str, token: str) -> None:
    identity, ok = await manager.authenticate(connection_id, token)
    if ok:
        await manager.send_event(connection_id, EventType.AUTHENTICATED, {"user_id": identity})
    else:
        await manager.send_event(connection_id, EventType.AUTHENTICATION_FAILED, {"error": "Invalid token"})
