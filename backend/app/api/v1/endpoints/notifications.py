"""
站内通知API端点
"""
from uuid import UUID
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_actor, get_notification_inbox
from app.core.database import get_db
from app.schemas.common import Actor
from app.schemas.notification import NotificationChannel, NotificationResponse, NotificationListResponse
from app.services.notification_service import NotificationInbox

router = APIRouter()


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False, description="只看未读"),
    limit: int = Query(50, ge=1, le=200, description="最多返回条数"),
    actor: Actor = Depends(get_current_actor),
    inbox: NotificationInbox = Depends(get_notification_inbox),
    db: AsyncSession = Depends(get_db)
):
    """当前用户的站内通知"""
    return await inbox.list_notifications(db, actor.user_id, unread_only=unread_only, limit=limit)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: UUID,
    actor: Actor = Depends(get_current_actor),
    inbox: NotificationInbox = Depends(get_notification_inbox),
    db: AsyncSession = Depends(get_db)
):
    """标记已读"""
    return await inbox.mark_read(db, notification_id, actor.user_id)


@router.websocket("/ws/{user_id}")
async def notification_socket(websocket: WebSocket, user_id: str):
    """实时通知推送"""
    channel = websocket.app.state.notifier.channel(NotificationChannel.WEBSOCKET)
    await channel.connect(user_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        channel.disconnect(user_id, websocket)
