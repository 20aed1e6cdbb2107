import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..security import Role, decode_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Live Events"])


@router.websocket("/ws/events")
async def event_stream(
    websocket: WebSocket,
    doctor_id: Optional[int] = None,
    test_type: Optional[str] = None,
    admin: bool = False,
    token: Optional[str] = None,
):
    """
    Pushes events as JSON. Filter with ``doctor_id`` or ``test_type``; admin
    alerts need ``admin=true`` plus an admin ``token``. There is no replay, so
    clients fetch the queue over HTTP after (re)connecting.
    """
    if admin:
        user = decode_token(token) if token else None
        if user is None or user["role"] != Role.ADMIN.value:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    broadcaster = websocket.app.state.broadcaster
    sub, queue = broadcaster.subscribe_queue(
        asyncio.get_running_loop(),
        doctor_id=doctor_id,
        test_type=test_type.strip().upper() if test_type else None,
        admin=admin,
    )
    await websocket.accept()

    async def pump():
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    async def listen():
        # Inbound frames are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()

    sender = asyncio.create_task(pump())
    receiver = asyncio.create_task(listen())
    try:
        # whichever side stops first ends the stream
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sender.cancel()
        receiver.cancel()
        results = await asyncio.gather(sender, receiver, return_exceptions=True)
        broadcaster.unsubscribe(sub)

    for result in results:
        if isinstance(result, WebSocketDisconnect):
            logger.debug("Subscriber %s disconnected", sub.id)
        elif isinstance(result, Exception):
            logger.warning("Event stream %s closed after an error: %r", sub.id, result)
