"""
Notifications API - the current user's in-app feed
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User
from subsidy_crm.models.notification import Notification, NotificationRecipient
from subsidy_crm.api.auth import get_current_user

router = APIRouter()

FEED_LIMIT = 50


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    message: str
    payload: Optional[Dict[str, Any]] = None
    actor_id: Optional[int] = None
    show_in_live_activity: bool = True
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    is_read: bool = False


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Latest notifications addressed to the current user"""
    result = await db.execute(
        select(Notification, NotificationRecipient.read_at)
        .join(NotificationRecipient, NotificationRecipient.notification_id == Notification.id)
        .where(NotificationRecipient.user_id == current_user.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(FEED_LIMIT)
    )
    return [
        NotificationResponse(
            id=n.id,
            type=n.type,
            title=n.title,
            message=n.message,
            payload=n.payload,
            actor_id=n.actor_id,
            show_in_live_activity=n.show_in_live_activity,
            created_at=n.created_at,
            read_at=read_at,
            is_read=read_at is not None,
        )
        for n, read_at in result.all()
    ]


@router.patch("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = await db.execute(
        select(NotificationRecipient).where(
            NotificationRecipient.notification_id == notification_id,
            NotificationRecipient.user_id == current_user.id,
        )
    )
    recipient = result.scalar_one_or_none()
    if recipient is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    if recipient.read_at is None:
        recipient.read_at = datetime.utcnow()
        await db.commit()
    return {"ok": True}
