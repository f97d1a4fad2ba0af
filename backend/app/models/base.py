from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every model."""


def utcnow() -> datetime:
    """Timezone aware UTC timestamp used for Python-side column defaults."""

    return datetime.now(timezone.utc)
