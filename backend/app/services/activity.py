"""Short-lived activity feed shown to followers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.database import get_db_session
from app.models import Activity, ActivityKind, utcnow
from app.schemas import ActivityRead
from murmur.realtime.delivery import DeliveryRouter

from .users import followee_ids, follower_ids, get_user_or_404

logger = logging.getLogger(__name__)

settings = get_settings()


class ActivityService:
    """Each user keeps at most ``cap`` activities, none older than ``horizon``."""

    def __init__(
        self,
        router: DeliveryRouter,
        *,
        cap: int | None = None,
        horizon_hours: int | None = None,
    ) -> None:
        self._router = router
        self._cap = cap or settings.activity_cap
        self._horizon = timedelta(hours=horizon_hours or settings.activity_horizon_hours)

    def _cutoff(self) -> datetime:
        return utcnow() - self._horizon

    async def record(
        self,
        db: Session,
        *,
        user_id: int,
        kind: ActivityKind,
        target_user_id: int | None = None,
        post_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Activity:
        user = get_user_or_404(db, user_id)
        activity = Activity(
            user_id=user_id,
            kind=ActivityKind(kind),
            target_user_id=target_user_id,
            post_id=post_id,
            details=metadata,
        )
        try:
            db.add(activity)
            db.flush()
            db.execute(
                delete(Activity)
                .where(Activity.user_id == user_id, Activity.created_at < self._cutoff())
                .execution_options(synchronize_session=False)
            )
            overflow_ids = list(
                db.scalars(
                    select(Activity.id)
                    .where(Activity.user_id == user_id)
                    .order_by(Activity.created_at.desc(), Activity.id.desc())
                    .offset(self._cap)
                )
            )
            if overflow_ids:
                db.execute(
                    delete(Activity)
                    .where(Activity.id.in_(overflow_ids))
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(activity)
        activity.user = user

        followers = follower_ids(db, user_id)
        if followers:
            payload = ActivityRead.model_validate(activity).model_dump(mode="json")
            delivered = await self._router.deliver_many(followers, "newActivity", {"activity": payload})
            logger.debug(
                "Activity fan-out",
                extra={"user_id": user_id, "followers": len(followers), "delivered": delivered},
            )
        return activity

    def list_feed(self, db: Session, user_id: int, *, limit: int | None = None) -> list[ActivityRead]:
        """Recent activities of the users ``user_id`` follows, newest first."""

        followed = followee_ids(db, user_id)
        if not followed:
            return []
        stmt = (
            select(Activity)
            .where(Activity.user_id.in_(followed), Activity.created_at >= self._cutoff())
            .options(selectinload(Activity.user))
            .order_by(Activity.created_at.desc(), Activity.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return [ActivityRead.model_validate(row) for row in db.scalars(stmt)]

    def cleanup(self, db: Session) -> int:
        """Drop activities older than the horizon for every user."""

        result = db.execute(
            delete(Activity)
            .where(Activity.created_at < self._cutoff())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return int(result.rowcount or 0)


async def run_cleanup_loop(service: ActivityService, interval_seconds: float) -> None:
    """Periodically purge expired activities until cancelled."""

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            with get_db_session() as db:
                removed = service.cleanup(db)
        except SQLAlchemyError:
            logger.exception("Activity cleanup failed")
            continue
        if removed:
            logger.info("Purged expired activities", extra={"count": removed})


__all__ = ["ActivityService", "run_cleanup_loop"]
