"""Filesystem storage for message media."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final
from uuid import uuid4

from fastapi import UploadFile, status

from app.config import Settings, get_settings
from app.services.errors import MediaUploadError, NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

_CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MiB


@dataclass(slots=True)
class StoredMedia:
    """A file persisted by the storage backend."""

    file_name: str
    content_type: str | None
    file_size: int
    relative_path: str
    url: str


class MediaStorage:
    """Writes uploads under ``media_root`` and serves them by relative path."""

    def __init__(self, root: Path, *, base_url: str, max_upload_size: int) -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip("/")
        self._max_upload_size = max_upload_size

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "MediaStorage":
        settings = settings or get_settings()
        return cls(
            settings.media_root,
            base_url=settings.media_base_url,
            max_upload_size=settings.max_upload_size,
        )

    def _media_root(self) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    async def store(self, owner_id: int, upload: UploadFile) -> StoredMedia:
        """Persist an upload; the returned URL is permanent."""

        try:
            target_dir = self._media_root() / "messages" / f"user_{owner_id}"
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MediaUploadError("Media storage unavailable") from exc

        original_name = upload.filename or "upload.bin"
        file_name = f"{uuid4().hex}{Path(original_name).suffix}"
        absolute_path = target_dir / file_name

        total_size = 0
        try:
            with absolute_path.open("wb") as buffer:
                while True:
                    chunk = await upload.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    total_size += len(chunk)
                    if total_size > self._max_upload_size:
                        raise MediaUploadError(
                            "Attachment exceeds allowed size",
                            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        )
                    buffer.write(chunk)
        except MediaUploadError:
            absolute_path.unlink(missing_ok=True)
            raise
        except OSError as exc:
            absolute_path.unlink(missing_ok=True)
            raise MediaUploadError("Failed to store attachment") from exc
        finally:
            await upload.close()

        if total_size == 0:
            absolute_path.unlink(missing_ok=True)
            raise ValidationFailedError("Attachment is empty")

        relative_path = Path(os.path.relpath(absolute_path, self._media_root())).as_posix()
        return StoredMedia(
            file_name=original_name,
            content_type=upload.content_type,
            file_size=total_size,
            relative_path=relative_path,
            url=f"{self._base_url}/{relative_path}",
        )

    def relative_path_for(self, url: str) -> str | None:
        prefix = f"{self._base_url}/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix):]

    def resolve_path(self, relative_path: str) -> Path:
        root = self._media_root().resolve()
        candidate = (root / relative_path).resolve()
        if not candidate.is_relative_to(root):
            raise ValidationFailedError("Invalid file path")
        if not candidate.is_file():
            raise NotFoundError("File not found")
        return candidate

    def delete(self, url: str | None) -> bool:
        """Remove a stored file; failures are logged, never raised."""

        if not url:
            return False
        relative_path = self.relative_path_for(url)
        if relative_path is None:
            return False
        try:
            path = self.resolve_path(relative_path)
            path.unlink()
        except (NotFoundError, ValidationFailedError, OSError):
            logger.warning("Failed to delete media file", extra={"url": url}, exc_info=logger.isEnabledFor(logging.DEBUG))
            return False
        return True


__all__ = ["MediaStorage", "StoredMedia"]
