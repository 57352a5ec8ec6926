"""Notification inbox and realtime fan-out."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set
import uuid

from fastapi import WebSocket
from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.notification import Notification
from services.errors import NotFound
from services.timestamps import isoformat, utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"response", "comment", "points", "like"}


def create_notification(
    db: AsyncSession,
    *,
    user_id: str,
    type: str,
    title: str,
    message: Optional[str] = None,
    reference_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Notification:
    """Add a notification to the caller's transaction."""
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unsupported notification type: {type}")
    row = Notification(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        reference_id=reference_id,
        actor_id=actor_id,
        is_read=False,
        created_at=now or utcnow(),
    )
    db.add(row)
    return row


def serialize_notification(row: Notification) -> Dict[str, Any]:
    return {
        "id": row.id,
        "type": row.type,
        "title": row.title,
        "message": row.message,
        "reference_id": row.reference_id,
        "actor_id": row.actor_id,
        "is_read": bool(row.is_read),
        "created_at": isoformat(row.created_at),
    }


class NotificationHub:
    """Per-user set of open websocket connections."""

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)

    async def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(user_id)
            if not sockets:
                return
            sockets.discard(websocket)
            if not sockets:
                self._connections.pop(user_id, None)

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    async def publish(self, user_id: str, payload: Dict[str, Any]) -> int:
        """Send to every socket of ``user_id``; returns how many received it."""
        sockets = list(self._connections.get(user_id, ()))
        delivered = 0
        for websocket in sockets:
            try:
                await websocket.send_json(payload)
                delivered += 1
            except Exception as exc:
                logger.warning("dropping notification socket for user=%s: %s", user_id, exc)
                await self.disconnect(user_id, websocket)
        return delivered

    async def publish_many(self, rows: Iterable[Notification]) -> None:
        for row in rows:
            await self.publish(row.user_id, {"event": "notification", "notification": serialize_notification(row)})


async def list_notifications(
    user_id: str,
    db: AsyncSession,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    query = query.order_by(Notification.created_at.desc()).limit(max(1, min(int(limit), 200)))
    result = await db.execute(query)
    return [serialize_notification(row) for row in result.scalars().all()]


async def count_unread(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
    )
    return int(result.scalar() or 0)


async def mark_read(user_id: str, notification_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    row = result.scalar_one_or_none()
    if not row:
        raise NotFound("Notification not found.")
    row.is_read = True
    await db.commit()
    return serialize_notification(row)


async def mark_all_read(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)


async def delete_notification(user_id: str, notification_id: str, db: AsyncSession) -> None:
    result = await db.execute(
        delete(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        await db.rollback()
        raise NotFound("Notification not found.")
    await db.commit()
