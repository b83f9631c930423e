"""Delivery error taxonomy and the FastAPI handler that renders it.

Services raise these instead of ``HTTPException`` so they can run from
background jobs as well as from request handlers. Every error carries an
internal message (logged) and a public message (returned to the client).
"""

import logging
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "delivery_error"
    default_public_message: str = "Request could not be completed"

    def __init__(self, message: str, *, public_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.public_message = public_message or message or self.default_public_message


class ValidationError(DeliveryError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AuthorizationError(DeliveryError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(DeliveryError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InvalidAccessError(DeliveryError):
    """A download grant exists but may not be used right now.

    ``reason`` is one of ``status_not_active``, ``expired``,
    ``limit_exceeded`` or ``ip_not_permitted``. It is kept for logs and
    diagnostics only; clients always see the same message.
    """

    status_code = status.HTTP_403_FORBIDDEN
    code = "invalid_access"
    PUBLIC_MESSAGE = "This download link is no longer valid."

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Download access invalid: {reason}", public_message=self.PUBLIC_MESSAGE)
        self.reason = reason


class InvalidLicenseError(DeliveryError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_license"

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"License key invalid: {reason}", public_message="License key is not valid.")
        self.reason = reason


class ActivationLimitError(DeliveryError):
    status_code = status.HTTP_409_CONFLICT
    code = "activation_limit_exceeded"

    def __init__(self, message: str = "License key activation limit exceeded.") -> None:
        super().__init__(message)


class StorageError(DeliveryError):
    code = "storage_error"

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message, public_message="File storage is temporarily unavailable.")
        self.path = path


class StorageWriteError(StorageError):
    code = "storage_write_error"


class NotificationError(Exception):
    """Raised by notifiers; never converted into an HTTP error."""


async def delivery_error_handler(request: Request, exc: DeliveryError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "%s on %s %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message, "code": exc.code})
