"""Presence lookups and media downloads."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_media_storage, get_presence
from app.core.storage import MediaStorage
from app.database import get_db
from app.models import User
from app.schemas import PresenceRead
from app.services.users import get_user_or_404
from murmur.realtime.presence import PresenceRegistry

router = APIRouter(tags=["presence"])


@router.get("/presence/{user_id}", response_model=PresenceRead)
async def get_presence_status(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    registry: PresenceRegistry = Depends(get_presence),
) -> PresenceRead:
    user = get_user_or_404(db, user_id)
    return PresenceRead(user_id=user.id, online=await registry.is_online(user.id), in_call=user.in_call)


@router.get("/media/{path:path}", response_class=FileResponse)
def download_media(
    path: str,
    storage: MediaStorage = Depends(get_media_storage),
) -> FileResponse:
    return FileResponse(storage.resolve_path(path))
