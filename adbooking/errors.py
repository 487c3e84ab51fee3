"""
Workflow error taxonomy.

The store and the workflow engine raise these; routers translate them into
HTTP responses through workflow_error_to_http so handlers stay thin.
"""
from __future__ import annotations

from fastapi import HTTPException, status


class WorkflowError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ValidationError(WorkflowError):
    """Bad input, a disallowed transition or a forbidden cancel."""

    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDeniedError(WorkflowError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(WorkflowError):
    """Application absent from every partition, or a missing show/schedule row."""

    status_code = status.HTTP_404_NOT_FOUND


class CapacityError(WorkflowError):
    """Not enough ad minutes left on the schedule slot."""

    status_code = status.HTTP_409_CONFLICT


def workflow_error_to_http(exc: Exception) -> HTTPException:
    """
    Map an exception raised by the workflow layer into an HTTPException.
    Anything outside the taxonomy becomes a 500 with the exception message.
    """
    if isinstance(exc, WorkflowError):
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"An internal error occurred: {exc}",
    )
