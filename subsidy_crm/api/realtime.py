"""
WebSocket channel for live app events
"""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status

from subsidy_crm.database import AsyncSessionLocal
from subsidy_crm.api.auth import decode_access_token, get_active_user
from subsidy_crm.services.notifier import manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def events_socket(websocket: WebSocket, token: str = Query("")):
    """Authenticated by ?token=<jwt>; receives {"event": "app:event", "data": ...} messages"""
    async with AsyncSessionLocal() as db:
        user = await get_active_user(db, decode_access_token(token))
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = user.id
    await manager.connect(user_id, websocket)
    try:
        while True:
            # Client messages are ignored; receiving keeps the disconnect observable
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"WebSocket closed for user {user_id}")
    finally:
        manager.disconnect(user_id, websocket)
