"""HTTP endpoints for notifications and the activity feed."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_activity_service, get_current_user, get_notification_service
from app.database import get_db
from app.models import User
from app.schemas import ActivityRead, NotificationList, NotificationRead
from app.services.activity import ActivityService
from app.services.notifications import NotificationService

router = APIRouter(tags=["notifications"])


@router.get("/notifications", response_model=NotificationList)
def list_notifications(
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationList:
    return service.list_for_user(db, current_user.id, limit=limit)


@router.get("/notifications/unread-count")
def notifications_unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict[str, int]:
    return {"unread_count": service.unread_count(db, current_user.id)}


@router.post("/notifications/read-all")
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> dict[str, int]:
    return {"updated": service.mark_all_read(db, current_user.id)}


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
) -> NotificationRead:
    return NotificationRead.model_validate(service.mark_read(db, current_user.id, notification_id))


@router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: ActivityService = Depends(get_activity_service),
) -> list[ActivityRead]:
    return service.list_feed(db, current_user.id, limit=limit)
