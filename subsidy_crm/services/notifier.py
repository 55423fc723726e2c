"""
Notifications and live push.

Every event is stored once with all active users as recipients and then
pushed as an ``app:event`` message to each recipient's open WebSocket
connections.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.models.notification import Notification, NotificationRecipient
from subsidy_crm.models.user import User
from subsidy_crm.utils.helpers import json_safe

logger = logging.getLogger(__name__)

APP_EVENT = "app:event"


class ConnectionManager:
    """Open WebSocket connections grouped by user id"""

    def __init__(self):
        self._connections: Dict[int, Set[WebSocket]] = defaultdict(set)

    async def connect(self, user_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[user_id].add(websocket)
        logger.debug(f"WebSocket connected for user {user_id}")

    def disconnect(self, user_id: int, websocket: WebSocket) -> None:
        sockets = self._connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self._connections.pop(user_id, None)

    def connection_count(self, user_id: int) -> int:
        return len(self._connections.get(user_id, ()))

    async def send_to_user(self, user_id: int, message: Dict[str, Any]) -> None:
        for websocket in list(self._connections.get(user_id, ())):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping WebSocket for user {user_id}: {e}")
                self.disconnect(user_id, websocket)


manager = ConnectionManager()


async def broadcast_event(
    db: AsyncSession,
    type: str,
    title: str,
    message: str,
    payload: Optional[Dict[str, Any]] = None,
    actor_id: Optional[int] = None,
    show_in_live_activity: bool = True,
) -> Optional[Notification]:
    """Store a notification for all active users and push it to their sockets"""
    result = await db.execute(select(User.id).where(User.is_active.is_(True)).order_by(User.id))
    recipient_ids = list(result.scalars().all())

    notification = Notification(
        type=type,
        title=title,
        message=message,
        payload=json_safe(payload or {}),
        actor_id=actor_id,
        show_in_live_activity=show_in_live_activity,
        created_at=datetime.utcnow(),
        recipients=[NotificationRecipient(user_id=user_id) for user_id in recipient_ids],
    )
    db.add(notification)
    await db.commit()

    event = {
        "event": APP_EVENT,
        "data": {
            "id": notification.id,
            "type": type,
            "title": title,
            "message": message,
            "payload": notification.payload,
            "show_in_live_activity": show_in_live_activity,
            "created_at": json_safe(notification.created_at),
        },
    }
    for user_id in recipient_ids:
        await manager.send_to_user(user_id, event)
    return notification
