"""
Notification inbox endpoints and the live push websocket.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, context_from_query_token, get_auth_context
from routers.dependencies import get_notification_hub
from services.notifications import (
    NotificationHub,
    count_unread,
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def my_notifications(
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {
        "items": await list_notifications(auth.user_id, db, unread_only=unread_only, limit=limit),
        "unread_count": await count_unread(auth.user_id, db),
    }


@router.get("/unread-count")
async def unread_count(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"unread_count": await count_unread(auth.user_id, db)}


@router.post("/read-all")
async def read_all(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"updated": await mark_all_read(auth.user_id, db)}


@router.post("/{notification_id}/read")
async def read_one(
    notification_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await mark_read(auth.user_id, notification_id, db)


@router.delete("/{notification_id}", status_code=204)
async def remove_notification(
    notification_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await delete_notification(auth.user_id, notification_id, db)


@router.websocket("/ws")
async def notifications_socket(
    websocket: WebSocket,
    token: Optional[str] = None,
    hub: NotificationHub = Depends(get_notification_hub),
):
    """Push new notifications to the signed-in user while the socket is open."""
    auth = context_from_query_token(token)
    if auth is None or not auth.user_id:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    await hub.connect(auth.user_id, websocket)
    await websocket.send_json({"event": "connected", "user_id": auth.user_id})
    try:
        while True:
            # Clients only send keepalives; anything received is ignored.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("notification socket closed for user=%s", auth.user_id)
    finally:
        await hub.disconnect(auth.user_id, websocket)
