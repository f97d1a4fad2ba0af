"""Domain errors raised by the services and mapped to HTTP responses."""

from __future__ import annotations

from fastapi import status


class ServiceError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class NotParticipantError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, detail: str = "Not a participant of this conversation") -> None:
        super().__init__(detail)


class ValidationFailedError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class MediaUploadError(ServiceError):
    status_code = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "MediaUploadError",
    "NotFoundError",
    "NotParticipantError",
    "ServiceError",
    "ValidationFailedError",
]
