"""WebSocket endpoint for the real-time audit stream."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Stream"])


@router.websocket("/ws")
async def audit_stream(websocket: WebSocket):
    """
    Subscribe to live events. Authenticate with ``Authorization: Bearer <jwt>``
    or ``?token=<jwt>``; see services.audit_stream for the frame format.
    """
    manager = websocket.app.state.stream
    conn = await manager.connect(websocket)
    if conn is None:
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is None:
                logger.debug("Ignoring binary frame from user_id=%s", conn.user_id)
                continue
            await manager.handle_client_message(conn, text)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(conn)
