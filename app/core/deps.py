"""FastAPI dependencies shared by the v1 endpoints."""

from fastapi import HTTPException, Request, status

from app.core.context import AppContext
from app.core.exceptions import (
    ApprovalAlreadyResolved,
    ApprovalExpired,
    ApprovalNotFound,
    EntityNotFound,
    ExecutionError,
    VoiceCRMError,
)


def get_context(request: Request) -> AppContext:
    """The AppContext built in the lifespan handler.

    Raises 503 if the application has not finished starting.
    """
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return context


def http_error(exc: VoiceCRMError) -> HTTPException:
    """Map a pipeline exception to the HTTP status the API reports."""
    if isinstance(exc, (ApprovalNotFound, EntityNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ApprovalAlreadyResolved):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ApprovalExpired):
        return HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc))
    if isinstance(exc, ExecutionError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
