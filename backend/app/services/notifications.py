"""Per-user notification log with count and age bounds."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.models import Notification, NotificationKind, utcnow
from app.schemas import NotificationList, NotificationRead
from murmur.realtime.delivery import DeliveryRouter

from .errors import NotFoundError
from .notifier import Notifier, NoopNotifier, PushNotification, dispatch_push
from .users import display_name, get_user_or_404

logger = logging.getLogger(__name__)

settings = get_settings()

_PUSH_TEXT = {
    NotificationKind.FOLLOW: "started following you",
    NotificationKind.COMMENT: "commented on your post",
    NotificationKind.MENTION: "mentioned you",
    NotificationKind.LIKE: "liked your post",
    NotificationKind.COLLABORATION: "invited you to collaborate",
    NotificationKind.POST_EDIT: "edited a post you collaborate on",
}


class NotificationService:
    def __init__(
        self,
        router: DeliveryRouter,
        *,
        notifier: Notifier | None = None,
        cap: int | None = None,
        retention_days: int | None = None,
    ) -> None:
        self._router = router
        self._notifier: Notifier = notifier or NoopNotifier()
        self._cap = cap or settings.notification_cap
        self._retention = timedelta(days=retention_days or settings.notification_retention_days)

    async def create(
        self,
        db: Session,
        *,
        user_id: int,
        kind: NotificationKind,
        from_user_id: int,
        post_id: int | None = None,
        comment: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Record a notification; users are never notified about themselves."""

        if user_id == from_user_id:
            return None
        get_user_or_404(db, user_id)
        actor = get_user_or_404(db, from_user_id)

        notification = Notification(
            user_id=user_id,
            kind=NotificationKind(kind),
            from_user_id=from_user_id,
            post_id=post_id,
            comment=comment,
            details=metadata,
        )
        try:
            db.add(notification)
            db.flush()
            evicted = self._enforce_bounds(db, user_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(notification)
        if evicted:
            logger.debug("Evicted notifications", extra={"user_id": user_id, "count": evicted})

        payload = NotificationRead.model_validate(notification).model_dump(mode="json")
        delivered = await self._router.deliver(user_id, "newNotification", {"notification": payload})
        if not delivered:
            await dispatch_push(
                self._notifier,
                PushNotification(
                    user_id=user_id,
                    title="New notification",
                    body=f"{display_name(actor)} {_PUSH_TEXT[notification.kind]}",
                    data={"type": "notification", "notificationId": notification.id, "kind": notification.kind.value},
                ),
            )
        return notification

    def _enforce_bounds(self, db: Session, user_id: int) -> int:
        cutoff = utcnow() - self._retention
        expired = db.execute(
            delete(Notification)
            .where(Notification.user_id == user_id, Notification.created_at < cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        overflow_ids = list(
            db.scalars(
                select(Notification.id)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .offset(self._cap)
            )
        )
        if overflow_ids:
            db.execute(
                delete(Notification)
                .where(Notification.id.in_(overflow_ids))
                .execution_options(synchronize_session=False)
            )
        return int(expired) + len(overflow_ids)

    def list_for_user(self, db: Session, user_id: int, *, limit: int | None = None) -> NotificationList:
        limit = max(1, min(limit or settings.notification_page_size, settings.notification_cap))
        rows = db.scalars(
            select(Notification)
            .where(Notification.user_id == user_id)
            .options(selectinload(Notification.from_user))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return NotificationList(
            notifications=[NotificationRead.model_validate(row) for row in rows],
            unread_count=self.unread_count(db, user_id),
        )

    def unread_count(self, db: Session, user_id: int) -> int:
        return int(
            db.scalar(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id, Notification.read.is_(False)
                )
            )
            or 0
        )

    def mark_read(self, db: Session, user_id: int, notification_id: int) -> Notification:
        notification = db.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification not found")
        notification.read = True
        db.commit()
        db.refresh(notification)
        return notification

    def mark_all_read(self, db: Session, user_id: int) -> int:
        result = db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return int(result.rowcount or 0)


__all__ = ["NotificationService"]
