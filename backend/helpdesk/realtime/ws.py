"""WebSocket endpoint.

Protocol:
    Every frame, in both directions, is a JSON object::

        {"event": "<name>", "data": {...}}

    On accept the server sends ``connected`` with the connection id. The first
    event a client sends must be ``authenticate``; anything else is answered
    with an ``error`` event until it succeeds.
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .router import EventRouter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Accept a connection and feed its frames to the event router."""
    event_router: EventRouter = websocket.app.state.event_router
    hub = event_router.hub
    connection_id = await hub.accept(websocket)
    logger.info("[WS] Connection %s opened", connection_id)

    try:
        while websocket.application_state == WebSocketState.CONNECTED:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await hub.send(connection_id, "error", {"message": "Invalid JSON", "event": None})
                continue

            event = frame.get("event") if isinstance(frame, dict) else None
            if not isinstance(event, str) or not event:
                await hub.send(
                    connection_id, "error",
                    {"message": "Frames must be objects with an 'event' name", "event": None},
                )
                continue

            logger.debug("[WS] %s received: event=%s", connection_id, event)
            await event_router.dispatch(connection_id, event, frame.get("data"))
    except WebSocketDisconnect:
        logger.info("[WS] Connection %s closed by client", connection_id)
    finally:
        await event_router.disconnect(connection_id)
