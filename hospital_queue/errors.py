"""Error taxonomy of the queue engine and its HTTP rendering."""
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


class QueueError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def detail(self) -> Dict[str, Any]:
        return {"detail": self.message, **self.extra}


class ValidationError(QueueError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(QueueError):
    status_code = status.HTTP_404_NOT_FOUND


class OutOfOrderError(QueueError):
    """Raised when a WAITING entry that is not next tries to begin service."""
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, next_entry_id: int, message: Optional[str] = None):
        super().__init__(
            message or "Serial token enforcement: please take patients in queue order.",
            next_entry_id=next_entry_id,
        )
        self.next_entry_id = next_entry_id


class StateError(QueueError):
    status_code = status.HTTP_409_CONFLICT


class ConflictError(QueueError):
    """A transient race outlived the internal retry budget."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AuthRequiredError(QueueError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(QueueError):
    status_code = status.HTTP_403_FORBIDDEN


async def queue_error_handler(request: Request, exc: QueueError):
    return JSONResponse(status_code=exc.status_code, content=exc.detail())
